from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from .models import GeofenceZone

APPLE_COMPANY_ID = 0x004C


@dataclass(frozen=True)
class ZoneConfigError(ValueError):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class FilterConfig:
    process_noise: float = 0.05
    measurement_noise: float = 3.0
    median_window: int = 3
    max_distance_meters: float = 50.0


@dataclass(frozen=True)
class RegistryConfig:
    beacon_timeout_seconds: float = 60.0
    eviction_interval_seconds: float = 5.0


@dataclass(frozen=True)
class GeofenceTiming:
    """Hysteresis and timing knobs for the per-zone state machine."""

    hysteresis_factor: float = 1.2
    dwell_seconds: float = 10.0
    inside_timeout_seconds: float = 60.0
    boundary_timeout_seconds: float = 30.0
    tick_interval_seconds: float = 3.0


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for transient scan registration failures.

    The n-th consecutive failure (n <= ``max_retries``) is retried after
    ``base_delay_seconds * n``. Once exhausted, a new start inside
    ``failure_window_seconds`` of the last failure waits ``cooldown_seconds``
    and begins a fresh round.
    """

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    failure_window_seconds: float = 30.0
    cooldown_seconds: float = 10.0

    def delay_for(self, failure_count: int) -> Optional[float]:
        if failure_count < 1 or failure_count > self.max_retries:
            return None
        return self.base_delay_seconds * failure_count


@dataclass(frozen=True)
class EngineConfig:
    filter: FilterConfig = field(default_factory=FilterConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    geofence: GeofenceTiming = field(default_factory=GeofenceTiming)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    manufacturer_ids: Sequence[int] = (APPLE_COMPANY_ID,)
    # Derive the UUID allow-list from the enabled zones on every zone change.
    auto_allow_list: bool = True


@dataclass(frozen=True)
class BleDevice:
    """A physical beacon that can back a geofence zone."""

    id: str
    name: str
    uuid: str
    major: int
    minor: int
    radius_meters: float = 5.0
    enabled: bool = True


@dataclass(frozen=True)
class DeviceBleConfig:
    """Per-host overrides: BLE device id -> enabled for this host."""

    device_id: str
    enabled_ble_devices: Mapping[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class BleDeviceCatalog:
    """In-memory beacon catalog shared by several hosts.

    A beacon backs a zone on a host when it is enabled globally and the
    host's override (if any) does not disable it. Hosts without an override
    get every globally enabled beacon.
    """

    ble_devices: Sequence[BleDevice] = field(default_factory=tuple)
    device_configs: Sequence[DeviceBleConfig] = field(default_factory=tuple)

    def _overrides(self, device_id: str) -> Optional[Mapping[str, bool]]:
        for config in self.device_configs:
            if config.device_id == device_id:
                return config.enabled_ble_devices
        return None

    def enabled_devices(self) -> List[BleDevice]:
        return [device for device in self.ble_devices if device.enabled]

    def enabled_devices_for(self, device_id: str) -> List[BleDevice]:
        overrides = self._overrides(device_id)
        enabled: List[BleDevice] = []
        for device in self.enabled_devices():
            if overrides is not None and not overrides.get(device.id, True):
                continue
            enabled.append(device)
        return enabled

    def is_enabled_for(self, device_id: str, ble_device_id: str) -> bool:
        return any(
            device.id == ble_device_id for device in self.enabled_devices_for(device_id)
        )

    def device_enablement(self, device_id: str) -> Dict[str, bool]:
        overrides = self._overrides(device_id) or {}
        return {
            device.id: device.enabled and overrides.get(device.id, True)
            for device in self.ble_devices
        }

    def to_zones(self, device_id: str) -> List[GeofenceZone]:
        return [
            GeofenceZone(
                id=device.id,
                name=device.name,
                beacon_uuid=device.uuid,
                beacon_major=device.major,
                beacon_minor=device.minor,
                radius_meters=device.radius_meters,
                enabled=True,
            )
            for device in self.enabled_devices_for(device_id)
        ]
