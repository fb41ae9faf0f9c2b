from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ZoneState(str, Enum):
    UNKNOWN = "unknown"
    OUTSIDE = "outside"
    INSIDE = "inside"

    def __str__(self) -> str:
        return self.value


class GeofenceEventType(str, Enum):
    ENTER = "enter"
    EXIT = "exit"
    DWELL = "dwell"

    def __str__(self) -> str:
        return self.value


class BeaconEventType(str, Enum):
    DISCOVERED = "discovered"
    LOST = "lost"

    def __str__(self) -> str:
        return self.value


class ScanFailure(str, Enum):
    """Failure classes reported by the scan primitive."""

    ALREADY_STARTED = "already_started"
    REGISTRATION_FAILED = "registration_failed"
    FEATURE_UNSUPPORTED = "feature_unsupported"
    INTERNAL_ERROR = "internal_error"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BeaconIdentity:
    """Key for filter state, registry entries and zone matching.

    The UUID is stored in canonical uppercase so identities compare equal
    regardless of the case they were written in.
    """

    uuid: str
    major: int
    minor: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "uuid", normalize_uuid(self.uuid))

    @property
    def key(self) -> str:
        return f"{self.uuid}-{self.major}-{self.minor}"


@dataclass(frozen=True)
class RawAdvertisement:
    timestamp: float
    manufacturer_id: int
    payload: bytes
    rssi: int
    address: Optional[str] = None


@dataclass(frozen=True)
class BeaconObservation:
    identity: BeaconIdentity
    rssi: int
    tx_power: int
    distance_meters: float
    timestamp: float


@dataclass(frozen=True)
class RegisteredBeacon:
    identity: BeaconIdentity
    distance_meters: float
    rssi: int
    last_seen: float


@dataclass(frozen=True)
class GeofenceZone:
    """A zone centred on one beacon; ``None`` major/minor match any value."""

    id: str
    name: str
    beacon_uuid: str
    beacon_major: Optional[int] = None
    beacon_minor: Optional[int] = None
    radius_meters: float = 5.0
    enabled: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "beacon_uuid", normalize_uuid(self.beacon_uuid))

    def matches(self, identity: BeaconIdentity) -> bool:
        if identity.uuid != self.beacon_uuid:
            return False
        if self.beacon_major is not None and identity.major != self.beacon_major:
            return False
        if self.beacon_minor is not None and identity.minor != self.beacon_minor:
            return False
        return True

    def exit_threshold(self, hysteresis_factor: float) -> float:
        return self.radius_meters * hysteresis_factor


@dataclass(frozen=True)
class GeofenceEvent:
    type: GeofenceEventType
    zone: GeofenceZone
    beacon: RegisteredBeacon
    timestamp: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class BeaconEvent:
    type: BeaconEventType
    beacon: RegisteredBeacon
    timestamp: float


@dataclass(frozen=True)
class ScanErrorEvent:
    failure: ScanFailure
    message: str
    attempts: int
    timestamp: float


def normalize_uuid(value: str) -> str:
    return str(value).strip().upper()
