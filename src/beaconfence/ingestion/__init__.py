"""Advertisement decoding and radio scan backends."""

from .bleak_backend import (
    BleakScanBackend,
    BleakScanConfig,
    OfflineAdvertisement,
    OfflineScanBackend,
    classify_bleak_error,
)
from .ibeacon import (
    IBEACON_PAYLOAD_SIZE,
    build_ibeacon_payload,
    parse_advertisement,
    parse_ibeacon,
)

__all__ = [
    "BleakScanBackend",
    "BleakScanConfig",
    "IBEACON_PAYLOAD_SIZE",
    "OfflineAdvertisement",
    "OfflineScanBackend",
    "build_ibeacon_payload",
    "classify_bleak_error",
    "parse_advertisement",
    "parse_ibeacon",
]
