from __future__ import annotations

import json
from pathlib import Path

import pytest

from beaconfence.cli import (
    _beacon_event_payload,
    _build_pipeline,
    _parse_engine_config,
    _scan_error_payload,
    _status_payload,
    _zone_event_payload,
    main,
)
from beaconfence.config import ZoneConfigError
from beaconfence.ingestion import BleakScanBackend, OfflineScanBackend
from beaconfence.models import (
    BeaconEvent,
    BeaconEventType,
    BeaconIdentity,
    GeofenceEvent,
    GeofenceEventType,
    GeofenceZone,
    RegisteredBeacon,
    ScanErrorEvent,
    ScanFailure,
    ZoneState,
)

BEACON_UUID = "E2C56DB5-DFFB-48D2-B060-D0F5A71096E0"
OTHER_UUID = "11111111-2222-3333-4444-555555555555"


def _make_config(**overrides) -> dict:
    config = {
        "zones": [
            {
                "id": "lobby",
                "name": "Lobby",
                "beacon_uuid": BEACON_UUID,
                "beacon_major": 1,
                "beacon_minor": 1,
                "radius_meters": 5.0,
            }
        ],
        "scanner": {
            "type": "offline",
            "advertisements": [
                {
                    "uuid": BEACON_UUID,
                    "major": 1,
                    "minor": 1,
                    "tx_power": -59,
                    "rssi": -59,
                    "address": "AA:BB:CC:DD:EE:FF",
                }
            ],
        },
    }
    config.update(overrides)
    return config


def _make_beacon() -> RegisteredBeacon:
    return RegisteredBeacon(
        identity=BeaconIdentity(uuid=BEACON_UUID, major=1, minor=1),
        distance_meters=1.234,
        rssi=-60,
        last_seen=10.0,
    )


def test_build_pipeline_from_offline_config() -> None:
    pipeline, backend = _build_pipeline(_make_config())

    assert isinstance(backend, OfflineScanBackend)
    assert pipeline.get_all_zone_states() == {"lobby": ("Lobby", ZoneState.UNKNOWN)}
    assert pipeline.registry.uuid_allow_list == frozenset({BEACON_UUID})
    pipeline.cleanup()


def test_build_pipeline_merges_catalog_zones_for_device() -> None:
    config = _make_config(
        device_id="host-a",
        ble_devices=[
            {"id": "ble-1", "name": "Dock", "uuid": OTHER_UUID, "major": 2, "minor": 1},
            {"id": "ble-2", "name": "Gate", "uuid": OTHER_UUID, "major": 2, "minor": 2},
        ],
        device_configs=[{"device_id": "host-a", "enabled_ble_devices": {"ble-2": False}}],
    )

    pipeline, _ = _build_pipeline(config)

    assert sorted(pipeline.get_all_zone_states()) == ["ble-1", "lobby"]
    assert pipeline.registry.uuid_allow_list == frozenset({BEACON_UUID, OTHER_UUID})
    pipeline.cleanup()


def test_explicit_allow_list_overrides_zone_targets() -> None:
    pipeline, _ = _build_pipeline(_make_config(uuid_allow_list=[]))

    assert pipeline.config.auto_allow_list is False
    assert pipeline.registry.uuid_allow_list == frozenset()
    pipeline.cleanup()


def test_invalid_zone_raises_zone_config_error() -> None:
    config = _make_config(zones=[{"id": "lobby", "radius_meters": 5.0}])

    with pytest.raises(ZoneConfigError, match="beacon_uuid"):
        _build_pipeline(config)


def test_duplicate_zone_ids_are_rejected() -> None:
    zone = {"id": "lobby", "beacon_uuid": BEACON_UUID}

    with pytest.raises(ZoneConfigError, match="Duplicate zone id"):
        _build_pipeline(_make_config(zones=[zone, dict(zone)]))


def test_unsupported_scanner_type() -> None:
    with pytest.raises(ValueError, match="Unsupported scanner type"):
        _build_pipeline(_make_config(scanner={"type": "serial"}))


def test_bleak_scanner_config_is_parsed_without_starting() -> None:
    _, backend = _build_pipeline(_make_config(scanner={"type": "bleak", "adapter": "hci1"}))

    assert isinstance(backend, BleakScanBackend)


def test_engine_config_overrides() -> None:
    config = _parse_engine_config(
        {
            "filter": {"median_window": 5},
            "timing": {"dwell_seconds": 4},
            "retry": {"max_retries": 1},
            "manufacturer_ids": [76, 89],
        }
    )

    assert config.filter.median_window == 5
    assert config.filter.measurement_noise == 3.0
    assert config.geofence.dwell_seconds == 4.0
    assert config.retry.max_retries == 1
    assert config.manufacturer_ids == (76, 89)
    assert config.auto_allow_list is True


def test_engine_config_rejects_boolean_integers() -> None:
    with pytest.raises(ValueError, match="filter.median_window"):
        _parse_engine_config({"filter": {"median_window": True}})


def test_event_payloads() -> None:
    beacon = _make_beacon()
    zone = GeofenceZone(id="lobby", name="Lobby", beacon_uuid=BEACON_UUID)

    zone_payload = _zone_event_payload(
        GeofenceEvent(type=GeofenceEventType.EXIT, zone=zone, beacon=beacon, timestamp=12.0, reason="beacon_lost")
    )
    beacon_payload = _beacon_event_payload(
        BeaconEvent(type=BeaconEventType.LOST, beacon=beacon, timestamp=70.0)
    )
    error_payload = _scan_error_payload(
        ScanErrorEvent(failure=ScanFailure.REGISTRATION_FAILED, message="busy", timestamp=3.0, attempts=4)
    )

    assert zone_payload["event"] == "zone_exit"
    assert zone_payload["zone_name"] == "Lobby"
    assert zone_payload["distance_meters"] == 1.23
    assert zone_payload["reason"] == "beacon_lost"
    assert beacon_payload["event"] == "beacon_lost"
    assert (beacon_payload["major"], beacon_payload["minor"]) == (1, 1)
    assert error_payload == {
        "event": "scan_error",
        "timestamp": 3.0,
        "failure": "registration_failed",
        "message": "busy",
        "attempts": 4,
    }


def test_status_payload_lists_zone_readings() -> None:
    pipeline, _ = _build_pipeline(_make_config())

    payload = _status_payload(pipeline, 5.0)

    assert payload["event"] == "status"
    assert payload["beacons"] == 0
    assert payload["zones"]["lobby"] == {"name": "Lobby", "state": "unknown", "distance_meters": None}
    pipeline.cleanup()


def test_main_streams_ndjson_events(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "beacons.json"
    config_path.write_text(json.dumps(_make_config()), encoding="utf-8")

    exit_code = main(
        [
            "--config",
            str(config_path),
            "--duration",
            "0.5",
            "--status-interval",
            "0.1",
            "--log-level",
            "WARNING",
        ]
    )

    assert exit_code == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    events = [line["event"] for line in lines]
    assert events.count("beacon_discovered") == 1
    assert events.count("zone_enter") == 1
    assert events.index("beacon_discovered") < events.index("zone_enter")
    assert "status" in events
    enter = next(line for line in lines if line["event"] == "zone_enter")
    assert enter["zone_id"] == "lobby"


def test_main_rejects_missing_config(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        main(["--config", str(tmp_path / "missing.json")])
