from __future__ import annotations

import logging
from typing import List

from beaconfence.events import EventBus
from beaconfence.geofence import GeofenceEngine
from beaconfence.models import (
    BeaconIdentity,
    GeofenceEvent,
    GeofenceEventType,
    GeofenceZone,
    RegisteredBeacon,
    ZoneState,
)

BEACON_UUID = "E2C56DB5-DFFB-48D2-B060-D0F5A71096E0"
OTHER_UUID = "11111111-2222-3333-4444-555555555555"


def _make_zone(
    zone_id: str = "lobby",
    radius: float = 5.0,
    major=1,
    minor=1,
    enabled: bool = True,
    uuid: str = BEACON_UUID,
) -> GeofenceZone:
    return GeofenceZone(
        id=zone_id,
        name=zone_id.title(),
        beacon_uuid=uuid,
        beacon_major=major,
        beacon_minor=minor,
        radius_meters=radius,
        enabled=enabled,
    )


def _make_beacon(
    distance: float,
    last_seen: float,
    minor: int = 1,
    uuid: str = BEACON_UUID,
) -> RegisteredBeacon:
    return RegisteredBeacon(
        identity=BeaconIdentity(uuid=uuid, major=1, minor=minor),
        distance_meters=distance,
        rssi=-65,
        last_seen=last_seen,
    )


def _make_engine(*zones: GeofenceZone, event_bus: EventBus = None) -> GeofenceEngine:
    engine = GeofenceEngine(event_bus=event_bus, clock=lambda: 0.0)
    for zone in zones or (_make_zone(),):
        engine.add_zone(zone)
    engine.set_monitoring(True, now=0.0)
    return engine


def _types(events: List[GeofenceEvent]) -> List[GeofenceEventType]:
    return [event.type for event in events]


def test_hysteresis_sequence_produces_exact_events() -> None:
    engine = _make_engine()

    emitted: List[GeofenceEvent] = []
    for timestamp, distance in enumerate([3.0, 5.5, 6.5, 3.0], start=1):
        emitted.extend(
            engine.handle_beacon_discovered(_make_beacon(distance, timestamp), now=timestamp)
        )

    assert _types(emitted) == [
        GeofenceEventType.ENTER,
        GeofenceEventType.EXIT,
        GeofenceEventType.ENTER,
    ]
    assert emitted[1].reason == "distance_threshold"
    assert engine.get_zone_state("lobby") is ZoneState.INSIDE


def test_dead_zone_while_outside_does_not_enter() -> None:
    engine = _make_engine()
    engine.handle_beacon_discovered(_make_beacon(3.0, 0.0), now=0.0)
    engine.handle_beacon_discovered(_make_beacon(7.0, 1.0), now=1.0)

    assert engine.handle_beacon_discovered(_make_beacon(5.5, 2.0), now=2.0) == []
    assert engine.get_zone_state("lobby") is ZoneState.OUTSIDE


def test_first_far_reading_marks_zone_outside_without_event() -> None:
    engine = _make_engine()

    assert engine.handle_beacon_discovered(_make_beacon(10.0, 0.0), now=0.0) == []
    assert engine.get_zone_state("lobby") is ZoneState.OUTSIDE


def test_dwell_fires_once_per_sojourn_and_rearms() -> None:
    engine = _make_engine()
    engine.handle_beacon_discovered(_make_beacon(3.0, 0.0), now=0.0)

    assert engine.tick([_make_beacon(3.0, 9.0)], now=9.0) == []
    dwell = engine.tick([_make_beacon(3.0, 11.0)], now=11.0)
    assert _types(dwell) == [GeofenceEventType.DWELL]
    assert engine.tick([_make_beacon(3.0, 14.0)], now=14.0) == []
    assert engine.tick([_make_beacon(3.0, 20.0)], now=20.0) == []

    exit_events = engine.handle_beacon_discovered(_make_beacon(7.0, 21.0), now=21.0)
    enter_events = engine.handle_beacon_discovered(_make_beacon(3.0, 22.0), now=22.0)
    assert _types(exit_events + enter_events) == [
        GeofenceEventType.EXIT,
        GeofenceEventType.ENTER,
    ]

    assert engine.tick([_make_beacon(3.0, 31.0)], now=31.0) == []
    assert _types(engine.tick([_make_beacon(3.0, 32.5)], now=32.5)) == [GeofenceEventType.DWELL]


def test_inside_reading_waits_sixty_seconds_before_timeout() -> None:
    engine = _make_engine()
    engine.handle_beacon_discovered(_make_beacon(4.0, 0.0), now=0.0)

    assert engine.tick([], now=59.0) == []
    assert engine.tick([], now=60.0) == []

    events = engine.tick([], now=61.0)

    assert _types(events) == [GeofenceEventType.EXIT]
    assert events[0].reason == "timeout_60s"
    assert engine.get_zone_state("lobby") is ZoneState.OUTSIDE


def test_boundary_reading_times_out_after_thirty_seconds() -> None:
    engine = _make_engine()
    engine.handle_beacon_discovered(_make_beacon(3.0, 0.0), now=0.0)
    engine.handle_beacon_discovered(_make_beacon(5.5, 1.0), now=1.0)

    assert engine.tick([], now=30.0) == []

    events = engine.tick([], now=31.5)

    assert _types(events) == [GeofenceEventType.EXIT]
    assert events[0].reason == "timeout_30s"


def test_stale_snapshot_reading_does_not_reenter_after_timeout() -> None:
    engine = _make_engine()
    stale = _make_beacon(4.0, 0.0)
    engine.handle_beacon_discovered(stale, now=0.0)

    assert _types(engine.tick([stale], now=61.0)) == [GeofenceEventType.EXIT]
    assert engine.tick([stale], now=64.0) == []
    assert engine.get_zone_state("lobby") is ZoneState.OUTSIDE


def test_beacon_lost_exits_immediately() -> None:
    engine = _make_engine()
    beacon = _make_beacon(2.0, 0.0)
    engine.handle_beacon_discovered(beacon, now=0.0)

    events = engine.handle_beacon_lost(beacon, now=5.0)

    assert _types(events) == [GeofenceEventType.EXIT]
    assert events[0].reason == "beacon_lost"
    assert engine.get_distances()["lobby"].distance_meters is None


def test_losing_an_untracked_beacon_changes_nothing() -> None:
    engine = _make_engine()
    engine.handle_beacon_discovered(_make_beacon(2.0, 0.0), now=0.0)

    assert engine.handle_beacon_lost(_make_beacon(2.0, 0.0, minor=9), now=5.0) == []
    assert engine.get_zone_state("lobby") is ZoneState.INSIDE


def test_paused_engine_skips_evaluation_and_ignores_pause_time() -> None:
    engine = _make_engine()
    beacon = _make_beacon(4.0, 0.0)
    engine.handle_beacon_discovered(beacon, now=0.0)

    engine.set_monitoring(False)
    assert engine.tick([], now=100.0) == []
    assert engine.handle_beacon_discovered(_make_beacon(9.0, 100.0), now=100.0) == []
    assert engine.get_zone_state("lobby") is ZoneState.INSIDE

    engine.set_monitoring(True, now=100.0)
    assert engine.tick([], now=150.0) == []
    assert engine.tick([], now=160.0) == []

    events = engine.tick([], now=161.0)
    assert _types(events) == [GeofenceEventType.EXIT]
    assert events[0].reason == "timeout_60s"


def test_beacon_lost_while_paused_still_exits() -> None:
    engine = _make_engine()
    beacon = _make_beacon(2.0, 0.0)
    engine.handle_beacon_discovered(beacon, now=0.0)
    engine.set_monitoring(False)

    events = engine.handle_beacon_lost(beacon, now=70.0)

    assert _types(events) == [GeofenceEventType.EXIT]
    assert events[0].reason == "beacon_lost"
    assert engine.get_zone_state("lobby") is ZoneState.OUTSIDE
    assert engine.get_distances()["lobby"].distance_meters is None


def test_loss_older_than_current_sighting_is_ignored() -> None:
    engine = _make_engine()
    stale = _make_beacon(2.0, 0.0)
    engine.handle_beacon_discovered(stale, now=0.0)
    engine.handle_beacon_lost(stale, now=61.0)
    engine.handle_beacon_discovered(_make_beacon(2.0, 62.0), now=62.0)

    assert engine.handle_beacon_lost(stale, now=62.5) == []
    assert engine.get_zone_state("lobby") is ZoneState.INSIDE
    assert engine.get_distances()["lobby"].distance_meters == 2.0


def test_zone_changes_reset_only_the_affected_zone() -> None:
    lobby = _make_zone("lobby", minor=1)
    dock = _make_zone("dock", minor=2)
    engine = _make_engine(lobby, dock)
    engine.handle_beacon_discovered(_make_beacon(1.0, 0.0, minor=1), now=0.0)
    engine.handle_beacon_discovered(_make_beacon(1.0, 0.0, minor=2), now=0.0)

    engine.add_zone(_make_zone("lobby", minor=1, radius=3.0))

    assert engine.get_zone_state("lobby") is ZoneState.UNKNOWN
    assert engine.get_zone_state("dock") is ZoneState.INSIDE

    assert engine.remove_zone("dock") is True
    assert engine.remove_zone("dock") is False
    assert engine.get_zone_state("dock") is ZoneState.UNKNOWN


def test_replace_all_zones_starts_from_scratch() -> None:
    engine = _make_engine(_make_zone("lobby"))
    engine.handle_beacon_discovered(_make_beacon(1.0, 0.0), now=0.0)

    engine.replace_all_zones([_make_zone("dock", minor=2), _make_zone("gate", minor=3)])

    assert sorted(engine.get_all_zone_states()) == ["dock", "gate"]
    assert engine.active_zone_ids() == []
    assert all(state is ZoneState.UNKNOWN for _, state in engine.get_all_zone_states().values())


def test_unusual_radius_is_warned_and_kept(caplog) -> None:
    engine = GeofenceEngine()

    with caplog.at_level(logging.WARNING, logger="beaconfence.geofence"):
        engine.add_zone(_make_zone("tiny", radius=0.0))
        engine.add_zone(_make_zone("huge", radius=150.0))

    assert caplog.text.count("unusual radius") == 2
    assert sorted(zone.id for zone in engine.zones()) == ["huge", "tiny"]


def test_wildcard_zone_follows_nearest_beacon() -> None:
    engine = _make_engine(_make_zone("aisle", major=None, minor=None))

    events = engine.tick(
        [_make_beacon(8.0, 0.0, minor=1), _make_beacon(2.0, 0.0, minor=2)],
        now=0.0,
    )

    assert _types(events) == [GeofenceEventType.ENTER]
    assert events[0].beacon.identity.minor == 2

    assert engine.handle_beacon_discovered(_make_beacon(9.0, 1.0, minor=3), now=1.0) == []
    assert engine.get_zone_state("aisle") is ZoneState.INSIDE
    assert engine.get_distances()["aisle"].distance_meters == 2.0


def test_disabled_zone_is_never_matched() -> None:
    engine = _make_engine(_make_zone("off", enabled=False), _make_zone("on", uuid=OTHER_UUID))

    assert engine.handle_beacon_discovered(_make_beacon(1.0, 0.0), now=0.0) == []
    assert engine.tick([_make_beacon(1.0, 0.0)], now=0.0) == []
    assert engine.get_zone_state("off") is ZoneState.UNKNOWN
    assert engine.target_uuids() == {OTHER_UUID}


def test_events_are_dispatched_to_zone_listeners() -> None:
    received: List[GeofenceEvent] = []

    class _Listener:
        def on_zone_enter(self, event: GeofenceEvent) -> None:
            received.append(event)

        def on_zone_exit(self, event: GeofenceEvent) -> None:
            received.append(event)

        def on_zone_dwell(self, event: GeofenceEvent) -> None:
            received.append(event)

    bus = EventBus()
    bus.add_zone_listener(_Listener())
    engine = _make_engine(event_bus=bus)

    engine.handle_beacon_discovered(_make_beacon(2.0, 0.0), now=0.0)

    assert _types(received) == [GeofenceEventType.ENTER]
    assert received[0].zone.id == "lobby"
    assert received[0].timestamp == 0.0


def test_status_queries_and_summary() -> None:
    engine = _make_engine(_make_zone("lobby", minor=1), _make_zone("dock", minor=2))
    engine.handle_beacon_discovered(_make_beacon(1.5, 0.0, minor=1), now=0.0)

    assert engine.get_all_zone_states() == {
        "lobby": ("Lobby", ZoneState.INSIDE),
        "dock": ("Dock", ZoneState.UNKNOWN),
    }
    assert engine.active_zone_ids() == ["lobby"]
    assert engine.is_inside_any()
    assert engine.current_zone_name() == "Lobby"

    distances = engine.get_distances()
    assert distances["lobby"].distance_meters == 1.5
    assert distances["dock"].distance_meters is None

    summary = engine.summary()
    assert "Active zones: 1" in summary
    assert "Zone: Lobby" in summary
    assert "State: inside" in summary
    assert "Distance: 1.50m" in summary
