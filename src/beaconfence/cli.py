from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

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
from .ingestion import (
    BleakScanBackend,
    BleakScanConfig,
    OfflineAdvertisement,
    OfflineScanBackend,
    build_ibeacon_payload,
)
from .models import BeaconEvent, GeofenceEvent, GeofenceZone, ScanErrorEvent
from .pipeline import GeofencePipeline
from .scanning import ScanBackend

LOGGER = logging.getLogger(__name__)


def _load_config(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _require_mapping(value: object, label: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{label} must be an object.")
    return value


def _require_sequence(value: object, label: str) -> Sequence[object]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ValueError(f"{label} must be a list.")
    return value


def _require_float(value: object, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be numeric.")


def _require_int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be an integer.")


def _optional_int(value: object, label: str) -> Optional[int]:
    if value is None:
        return None
    return _require_int(value, label)


def _require_non_empty(value: object, label: str) -> str:
    if value is None:
        raise ValueError(f"{label} is required.")
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"{label} is required.")
        return value
    return str(value)


def _parse_zone(payload: Mapping[str, object], label: str) -> GeofenceZone:
    try:
        return GeofenceZone(
            id=_require_non_empty(payload.get("id"), f"{label}.id"),
            name=str(payload.get("name") or payload.get("id")),
            beacon_uuid=_require_non_empty(payload.get("beacon_uuid"), f"{label}.beacon_uuid"),
            beacon_major=_optional_int(payload.get("beacon_major"), f"{label}.beacon_major"),
            beacon_minor=_optional_int(payload.get("beacon_minor"), f"{label}.beacon_minor"),
            radius_meters=_require_float(
                payload.get("radius_meters", 5.0), f"{label}.radius_meters"
            ),
            enabled=bool(payload.get("enabled", True)),
        )
    except ValueError as exc:
        raise ZoneConfigError(str(exc)) from exc


def _parse_catalog(config: Mapping[str, object]) -> BleDeviceCatalog:
    devices: List[BleDevice] = []
    raw_devices = _require_sequence(config.get("ble_devices", []), "ble_devices")
    for idx, entry in enumerate(raw_devices):
        label = f"ble_devices[{idx}]"
        entry_map = _require_mapping(entry, label)
        try:
            devices.append(
                BleDevice(
                    id=_require_non_empty(entry_map.get("id"), f"{label}.id"),
                    name=str(entry_map.get("name") or entry_map.get("id")),
                    uuid=_require_non_empty(entry_map.get("uuid"), f"{label}.uuid"),
                    major=_require_int(entry_map.get("major"), f"{label}.major"),
                    minor=_require_int(entry_map.get("minor"), f"{label}.minor"),
                    radius_meters=_require_float(
                        entry_map.get("radius_meters", 5.0), f"{label}.radius_meters"
                    ),
                    enabled=bool(entry_map.get("enabled", True)),
                )
            )
        except ValueError as exc:
            raise ZoneConfigError(str(exc)) from exc

    device_configs: List[DeviceBleConfig] = []
    raw_configs = _require_sequence(config.get("device_configs", []), "device_configs")
    for idx, entry in enumerate(raw_configs):
        label = f"device_configs[{idx}]"
        entry_map = _require_mapping(entry, label)
        enabled = _require_mapping(
            entry_map.get("enabled_ble_devices", {}), f"{label}.enabled_ble_devices"
        )
        device_configs.append(
            DeviceBleConfig(
                device_id=_require_non_empty(entry_map.get("device_id"), f"{label}.device_id"),
                enabled_ble_devices={str(key): bool(value) for key, value in enabled.items()},
            )
        )
    return BleDeviceCatalog(ble_devices=tuple(devices), device_configs=tuple(device_configs))


def _parse_zones(config: Mapping[str, object]) -> List[GeofenceZone]:
    zones = [
        _parse_zone(_require_mapping(entry, f"zones[{idx}]"), f"zones[{idx}]")
        for idx, entry in enumerate(_require_sequence(config.get("zones", []), "zones"))
    ]
    catalog = _parse_catalog(config)
    if catalog.ble_devices:
        device_id = str(config.get("device_id", ""))
        zones.extend(catalog.to_zones(device_id))
    seen = set()
    for zone in zones:
        if zone.id in seen:
            raise ZoneConfigError(f"Duplicate zone id: {zone.id}")
        seen.add(zone.id)
    return zones


def _parse_engine_config(config: Mapping[str, object]) -> EngineConfig:
    filter_payload = _require_mapping(config.get("filter", {}), "filter")
    registry_payload = _require_mapping(config.get("registry", {}), "registry")
    timing_payload = _require_mapping(config.get("timing", {}), "timing")
    retry_payload = _require_mapping(config.get("retry", {}), "retry")
    manufacturer_ids = _require_sequence(
        config.get("manufacturer_ids", [APPLE_COMPANY_ID]), "manufacturer_ids"
    )

    defaults = EngineConfig()
    return EngineConfig(
        filter=FilterConfig(
            process_noise=_require_float(
                filter_payload.get("process_noise", defaults.filter.process_noise),
                "filter.process_noise",
            ),
            measurement_noise=_require_float(
                filter_payload.get("measurement_noise", defaults.filter.measurement_noise),
                "filter.measurement_noise",
            ),
            median_window=_require_int(
                filter_payload.get("median_window", defaults.filter.median_window),
                "filter.median_window",
            ),
            max_distance_meters=_require_float(
                filter_payload.get("max_distance_meters", defaults.filter.max_distance_meters),
                "filter.max_distance_meters",
            ),
        ),
        registry=RegistryConfig(
            beacon_timeout_seconds=_require_float(
                registry_payload.get(
                    "beacon_timeout_seconds", defaults.registry.beacon_timeout_seconds
                ),
                "registry.beacon_timeout_seconds",
            ),
            eviction_interval_seconds=_require_float(
                registry_payload.get(
                    "eviction_interval_seconds", defaults.registry.eviction_interval_seconds
                ),
                "registry.eviction_interval_seconds",
            ),
        ),
        geofence=GeofenceTiming(
            **{
                key: _require_float(
                    timing_payload.get(key, getattr(defaults.geofence, key)),
                    f"timing.{key}",
                )
                for key in (
                    "hysteresis_factor",
                    "dwell_seconds",
                    "inside_timeout_seconds",
                    "boundary_timeout_seconds",
                    "tick_interval_seconds",
                )
            }
        ),
        retry=RetryPolicy(
            max_retries=_require_int(
                retry_payload.get("max_retries", defaults.retry.max_retries),
                "retry.max_retries",
            ),
            base_delay_seconds=_require_float(
                retry_payload.get("base_delay_seconds", defaults.retry.base_delay_seconds),
                "retry.base_delay_seconds",
            ),
            failure_window_seconds=_require_float(
                retry_payload.get(
                    "failure_window_seconds", defaults.retry.failure_window_seconds
                ),
                "retry.failure_window_seconds",
            ),
            cooldown_seconds=_require_float(
                retry_payload.get("cooldown_seconds", defaults.retry.cooldown_seconds),
                "retry.cooldown_seconds",
            ),
        ),
        manufacturer_ids=tuple(
            _require_int(value, "manufacturer_ids") for value in manufacturer_ids
        ),
        auto_allow_list="uuid_allow_list" not in config,
    )


def _parse_offline_advertisement(
    payload: Mapping[str, object], label: str
) -> OfflineAdvertisement:
    if "payload_hex" in payload:
        try:
            raw = bytes.fromhex(str(payload["payload_hex"]))
        except ValueError:
            raise ValueError(f"{label}.payload_hex must be hexadecimal.")
    else:
        try:
            raw = build_ibeacon_payload(
                _require_non_empty(payload.get("uuid"), f"{label}.uuid"),
                _require_int(payload.get("major"), f"{label}.major"),
                _require_int(payload.get("minor"), f"{label}.minor"),
                _require_int(payload.get("tx_power", -59), f"{label}.tx_power"),
            )
        except Exception as exc:
            raise ValueError(f"{label} is not a valid iBeacon: {exc}") from exc
    return OfflineAdvertisement(
        manufacturer_id=_require_int(
            payload.get("manufacturer_id", APPLE_COMPANY_ID), f"{label}.manufacturer_id"
        ),
        payload=raw,
        rssi=_require_int(payload.get("rssi"), f"{label}.rssi"),
        offset_seconds=_require_float(payload.get("offset_seconds", 0.0), f"{label}.offset_seconds"),
        address=str(payload["address"]) if payload.get("address") else None,
    )


def _parse_scanner(payload: Mapping[str, object]) -> ScanBackend:
    scanner_type = str(payload.get("type", "bleak"))
    if scanner_type == "bleak":
        return BleakScanBackend(
            BleakScanConfig(
                adapter=str(payload["adapter"]) if payload.get("adapter") else None,
                scanning_mode=str(payload.get("scanning_mode", "active")),
                start_timeout_seconds=_require_float(
                    payload.get("start_timeout_seconds", 10.0), "scanner.start_timeout_seconds"
                ),
            )
        )
    if scanner_type == "offline":
        advertisements = [
            _parse_offline_advertisement(
                _require_mapping(entry, f"scanner.advertisements[{idx}]"),
                f"scanner.advertisements[{idx}]",
            )
            for idx, entry in enumerate(
                _require_sequence(payload.get("advertisements", []), "scanner.advertisements")
            )
        ]
        return OfflineScanBackend(advertisements, realtime=True)
    raise ValueError(f"Unsupported scanner type: {scanner_type}")


def _build_pipeline(config: Mapping[str, object]) -> Tuple[GeofencePipeline, ScanBackend]:
    engine_config = _parse_engine_config(config)
    zones = _parse_zones(config)
    backend = _parse_scanner(_require_mapping(config.get("scanner", {}), "scanner"))

    pipeline = GeofencePipeline(backend, config=engine_config)
    pipeline.replace_all_zones(zones)
    if "uuid_allow_list" in config:
        allow_list = _require_sequence(config["uuid_allow_list"], "uuid_allow_list")
        pipeline.set_uuid_allow_list(str(uuid) for uuid in allow_list)
    return pipeline, backend


def _zone_event_payload(event: GeofenceEvent) -> Dict[str, object]:
    return {
        "event": f"zone_{event.type.value}",
        "timestamp": event.timestamp,
        "zone_id": event.zone.id,
        "zone_name": event.zone.name,
        "beacon": event.beacon.identity.key,
        "distance_meters": round(event.beacon.distance_meters, 2),
        "reason": event.reason,
    }


def _beacon_event_payload(event: BeaconEvent) -> Dict[str, object]:
    identity = event.beacon.identity
    return {
        "event": f"beacon_{event.type.value}",
        "timestamp": event.timestamp,
        "uuid": identity.uuid,
        "major": identity.major,
        "minor": identity.minor,
        "rssi": event.beacon.rssi,
        "distance_meters": round(event.beacon.distance_meters, 2),
    }


def _scan_error_payload(event: ScanErrorEvent) -> Dict[str, object]:
    return {
        "event": "scan_error",
        "timestamp": event.timestamp,
        "failure": event.failure.value,
        "message": event.message,
        "attempts": event.attempts,
    }


def _status_payload(pipeline: GeofencePipeline, timestamp: float) -> Dict[str, object]:
    return {
        "event": "status",
        "timestamp": timestamp,
        "beacons": len(pipeline.get_discovered_beacons()),
        "zones": {
            zone_id: {
                "name": reading.name,
                "state": reading.state.value,
                "distance_meters": (
                    None if reading.distance_meters is None else round(reading.distance_meters, 2)
                ),
            }
            for zone_id, reading in pipeline.get_distances().items()
        },
    }


def _emit_ndjson(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload), flush=True)


class _NdjsonEventWriter:
    """Beacon and zone listener that writes one JSON line per event."""

    def on_beacon_discovered(self, event: BeaconEvent) -> None:
        _emit_ndjson(_beacon_event_payload(event))

    def on_beacon_lost(self, event: BeaconEvent) -> None:
        _emit_ndjson(_beacon_event_payload(event))

    def on_scan_error(self, event: ScanErrorEvent) -> None:
        _emit_ndjson(_scan_error_payload(event))

    def on_zone_enter(self, event: GeofenceEvent) -> None:
        _emit_ndjson(_zone_event_payload(event))

    def on_zone_exit(self, event: GeofenceEvent) -> None:
        _emit_ndjson(_zone_event_payload(event))

    def on_zone_dwell(self, event: GeofenceEvent) -> None:
        _emit_ndjson(_zone_event_payload(event))


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run beacon geofencing and print zone events as NDJSON."
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to a JSON configuration file.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after S seconds (0 = run until interrupted).",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=0.0,
        help="Seconds between status lines (0 = no status lines).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    config_path = Path(args.config)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    config_map = _require_mapping(_load_config(config_path), "config")

    pipeline, backend = _build_pipeline(config_map)
    writer = _NdjsonEventWriter()
    pipeline.add_beacon_listener(writer)
    pipeline.add_zone_listener(writer)

    duration = max(args.duration, 0.0)
    status_interval = max(args.status_interval, 0.0)
    started = time.monotonic()
    next_status = started + status_interval

    pipeline.start_monitoring()
    try:
        while True:
            now = time.monotonic()
            if duration and now - started >= duration:
                break
            if status_interval and now >= next_status:
                _emit_ndjson(_status_payload(pipeline, time.time()))
                next_status = now + status_interval
            time.sleep(0.05)
    except KeyboardInterrupt:
        return 0
    finally:
        LOGGER.info("%s", pipeline.summary())
        pipeline.cleanup()
        if isinstance(backend, BleakScanBackend):
            backend.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
