from __future__ import annotations

import struct
import uuid as uuid_lib
from typing import Optional

from ..config import APPLE_COMPANY_ID
from ..distance import estimate_distance
from ..models import BeaconIdentity, BeaconObservation, RawAdvertisement

IBEACON_TYPE = 0x02
IBEACON_LENGTH = 0x15
IBEACON_PAYLOAD_SIZE = 23

# type, length, uuid, major, minor, tx power
_IBEACON_LAYOUT = struct.Struct(">BB16sHHb")


def parse_advertisement(advertisement: RawAdvertisement) -> Optional[BeaconObservation]:
    """Parse an Apple manufacturer-data payload; ``None`` if it is not an iBeacon."""
    if advertisement.manufacturer_id != APPLE_COMPANY_ID:
        return None
    return parse_ibeacon(
        advertisement.payload,
        rssi=advertisement.rssi,
        timestamp=advertisement.timestamp,
    )


def parse_ibeacon(
    payload: bytes,
    *,
    rssi: int,
    timestamp: float,
) -> Optional[BeaconObservation]:
    """
    Decode the manufacturer-specific part of an iBeacon advertisement.

    Layout (big-endian): 0x02 0x15 | UUID (16) | major (2) | minor (2) |
    tx power (1, signed). Anything shorter or with other markers yields None.
    """
    if payload is None or len(payload) < IBEACON_PAYLOAD_SIZE:
        return None
    if payload[0] != IBEACON_TYPE or payload[1] != IBEACON_LENGTH:
        return None

    _, _, uuid_bytes, major, minor, tx_power = _IBEACON_LAYOUT.unpack_from(bytes(payload))
    identity = BeaconIdentity(
        uuid=str(uuid_lib.UUID(bytes=uuid_bytes)),
        major=major,
        minor=minor,
    )
    return BeaconObservation(
        identity=identity,
        rssi=int(rssi),
        tx_power=tx_power,
        distance_meters=estimate_distance(rssi, tx_power),
        timestamp=timestamp,
    )


def build_ibeacon_payload(uuid: str, major: int, minor: int, tx_power: int) -> bytes:
    """Encode the manufacturer-specific iBeacon payload (without company id)."""
    return _IBEACON_LAYOUT.pack(
        IBEACON_TYPE,
        IBEACON_LENGTH,
        uuid_lib.UUID(uuid).bytes,
        major,
        minor,
        tx_power,
    )
