"""iBeacon proximity smoothing and geofencing."""

from .config import (
    APPLE_COMPANY_ID,
    BleDevice,
    BleDeviceCatalog,
    DeviceBleConfig,
    EngineConfig,
    FilterConfig,
    GeofenceTiming,
    RegistryConfig,
    RetryPolicy,
    ZoneConfigError,
)
from .distance import UNKNOWN_DISTANCE, estimate_distance
from .events import BeaconListener, EventBus, ZoneListener
from .filters import DistanceFilter, FilterBank
from .geofence import GeofenceEngine, ZoneDistance
from .models import (
    BeaconEvent,
    BeaconEventType,
    BeaconIdentity,
    BeaconObservation,
    GeofenceEvent,
    GeofenceEventType,
    GeofenceZone,
    RawAdvertisement,
    RegisteredBeacon,
    ScanErrorEvent,
    ScanFailure,
    ZoneState,
)
from .pipeline import GeofencePipeline
from .registry import BeaconRegistry
from .scanning import (
    ScanBackend,
    ScanFilters,
    ScanStartError,
    ScanState,
    ScanStatistics,
    ScanSupervisor,
)
from .scheduler import PeriodicTask, TaskGroup, ThreadingScheduler

__all__ = [
    "APPLE_COMPANY_ID",
    "BleDevice",
    "BleDeviceCatalog",
    "DeviceBleConfig",
    "EngineConfig",
    "FilterConfig",
    "GeofenceTiming",
    "RegistryConfig",
    "RetryPolicy",
    "ZoneConfigError",
    "UNKNOWN_DISTANCE",
    "estimate_distance",
    "BeaconListener",
    "EventBus",
    "ZoneListener",
    "DistanceFilter",
    "FilterBank",
    "GeofenceEngine",
    "ZoneDistance",
    "BeaconEvent",
    "BeaconEventType",
    "BeaconIdentity",
    "BeaconObservation",
    "GeofenceEvent",
    "GeofenceEventType",
    "GeofenceZone",
    "RawAdvertisement",
    "RegisteredBeacon",
    "ScanErrorEvent",
    "ScanFailure",
    "ZoneState",
    "GeofencePipeline",
    "BeaconRegistry",
    "ScanBackend",
    "ScanFilters",
    "ScanStartError",
    "ScanState",
    "ScanStatistics",
    "ScanSupervisor",
    "PeriodicTask",
    "TaskGroup",
    "ThreadingScheduler",
]
