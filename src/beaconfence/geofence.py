"""
Per-zone hysteresis state machine.

Each configured zone tracks the nearest matching beacon and moves between
UNKNOWN, OUTSIDE and INSIDE:

- ENTER when the smoothed distance is within the zone radius.
- EXIT once the distance exceeds ``radius * hysteresis_factor``; readings in
  between are a dead zone and change nothing.
- DWELL once per INSIDE sojourn after ``dwell_seconds``.
- EXIT with a ``timeout_<n>s`` reason when an INSIDE zone hears nothing for
  too long, or ``beacon_lost`` when the registry evicts its beacon.

The engine never reads the clock during transitions unless ``now`` is
omitted, which keeps it deterministic under test.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import GeofenceTiming
from .events import EventBus
from .models import (
    GeofenceEvent,
    GeofenceEventType,
    GeofenceZone,
    RegisteredBeacon,
    ZoneState,
)

LOGGER = logging.getLogger(__name__)

REASON_DISTANCE = "distance_threshold"
REASON_BEACON_LOST = "beacon_lost"

MAX_RECOMMENDED_RADIUS_METERS = 100.0
_UNMATCHED_LOG_LIMIT = 3


@dataclass(frozen=True)
class ZoneDistance:
    name: str
    distance_meters: Optional[float]
    state: ZoneState


@dataclass
class _ZoneTrack:
    zone: GeofenceZone
    state: ZoneState = ZoneState.UNKNOWN
    entered_at: Optional[float] = None
    dwell_notified: bool = False
    beacon: Optional[RegisteredBeacon] = None


def timeout_reason(timeout_seconds: float) -> str:
    return f"timeout_{int(timeout_seconds)}s"


class GeofenceEngine:
    def __init__(
        self,
        *,
        event_bus: Optional[EventBus] = None,
        timing: Optional[GeofenceTiming] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._event_bus = event_bus
        self.timing = timing or GeofenceTiming()
        self._clock = clock
        self._tracks: Dict[str, _ZoneTrack] = {}
        self._lock = threading.RLock()
        self._monitoring = False
        self._resumed_at: Optional[float] = None
        self._unmatched_counts: Dict[str, int] = {}

    # Zone configuration

    def add_zone(self, zone: GeofenceZone) -> None:
        """Add or replace a zone; its state starts over as UNKNOWN."""
        if zone.radius_meters <= 0 or zone.radius_meters > MAX_RECOMMENDED_RADIUS_METERS:
            LOGGER.warning(
                "Zone '%s' has unusual radius %.2fm (expected 0 < radius <= %.0fm)",
                zone.id,
                zone.radius_meters,
                MAX_RECOMMENDED_RADIUS_METERS,
            )
        with self._lock:
            self._tracks[zone.id] = _ZoneTrack(zone=zone)
        LOGGER.info(
            "Added zone '%s' (%s) uuid=%s major=%s minor=%s radius=%.2fm",
            zone.name,
            zone.id,
            zone.beacon_uuid,
            "*" if zone.beacon_major is None else zone.beacon_major,
            "*" if zone.beacon_minor is None else zone.beacon_minor,
            zone.radius_meters,
        )

    def remove_zone(self, zone_id: str) -> bool:
        with self._lock:
            track = self._tracks.pop(zone_id, None)
        if track is None:
            return False
        LOGGER.info("Removed zone '%s' (%s)", track.zone.name, zone_id)
        return True

    def replace_all_zones(self, zones: Iterable[GeofenceZone]) -> None:
        zones = list(zones)
        with self._lock:
            self.clear_zones()
            for zone in zones:
                self.add_zone(zone)
        LOGGER.info("Replaced zone configuration with %d zone(s)", len(zones))

    def clear_zones(self) -> None:
        with self._lock:
            self._tracks.clear()
            self._unmatched_counts.clear()

    # Monitoring gate

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    def set_monitoring(self, enabled: bool, now: Optional[float] = None) -> None:
        with self._lock:
            if enabled == self._monitoring:
                return
            self._monitoring = enabled
            if enabled:
                self._resumed_at = self._now(now)
        LOGGER.info("Geofence monitoring %s", "resumed" if enabled else "paused")

    # Inputs

    def handle_beacon_discovered(
        self, beacon: RegisteredBeacon, now: Optional[float] = None
    ) -> List[GeofenceEvent]:
        now = self._now(now)
        events: List[GeofenceEvent] = []
        with self._lock:
            if not self._monitoring:
                return []
            matched = False
            for track in self._tracks.values():
                if not track.zone.enabled or not track.zone.matches(beacon.identity):
                    continue
                matched = True
                if not self._should_follow(track, beacon):
                    continue
                event = self._evaluate(track, beacon, now)
                if event is not None:
                    events.append(event)
            if not matched:
                self._log_unmatched(beacon)
        self._dispatch(events)
        return events

    def handle_beacon_lost(
        self, beacon: RegisteredBeacon, now: Optional[float] = None
    ) -> List[GeofenceEvent]:
        """Exit every zone tracking ``beacon``; applied even while paused.

        A loss older than the zone's current sighting of the same beacon
        (the beacon came back before the loss was handled) is ignored.
        """
        now = self._now(now)
        events: List[GeofenceEvent] = []
        with self._lock:
            for track in self._tracks.values():
                tracked = track.beacon
                if tracked is None or tracked.identity != beacon.identity:
                    continue
                if tracked.last_seen > beacon.last_seen:
                    continue
                if track.state is ZoneState.INSIDE:
                    events.append(self._exit(track, tracked, now, REASON_BEACON_LOST))
                track.beacon = None
        self._dispatch(events)
        return events

    def tick(
        self, snapshot: Iterable[RegisteredBeacon], now: Optional[float] = None
    ) -> List[GeofenceEvent]:
        """Reconcile zones against a registry snapshot, then expire silent zones."""
        now = self._now(now)
        beacons = list(snapshot)
        events: List[GeofenceEvent] = []
        with self._lock:
            if not self._monitoring:
                LOGGER.debug("Geofence tick skipped: monitoring paused")
                return []
            for track in self._tracks.values():
                if not track.zone.enabled:
                    continue
                beacon = self._nearest_fresh(track.zone, beacons, now)
                if beacon is None:
                    continue
                event = self._evaluate(track, beacon, now)
                if event is not None:
                    events.append(event)
            events.extend(self._expire_stale(now))
        self._dispatch(events)
        return events

    # Queries

    def zones(self) -> List[GeofenceZone]:
        with self._lock:
            return [track.zone for track in self._tracks.values()]

    def get_zone_state(self, zone_id: str) -> ZoneState:
        with self._lock:
            track = self._tracks.get(zone_id)
            return track.state if track is not None else ZoneState.UNKNOWN

    def get_all_zone_states(self) -> Dict[str, Tuple[str, ZoneState]]:
        with self._lock:
            return {
                zone_id: (track.zone.name, track.state)
                for zone_id, track in self._tracks.items()
            }

    def get_distances(self) -> Dict[str, ZoneDistance]:
        with self._lock:
            return {
                zone_id: ZoneDistance(
                    name=track.zone.name,
                    distance_meters=(
                        track.beacon.distance_meters if track.beacon is not None else None
                    ),
                    state=track.state,
                )
                for zone_id, track in self._tracks.items()
            }

    def active_zone_ids(self) -> List[str]:
        with self._lock:
            return [
                zone_id
                for zone_id, track in self._tracks.items()
                if track.state is ZoneState.INSIDE
            ]

    def is_inside_any(self) -> bool:
        return bool(self.active_zone_ids())

    def current_zone_name(self) -> Optional[str]:
        with self._lock:
            for track in self._tracks.values():
                if track.state is ZoneState.INSIDE:
                    return track.zone.name
        return None

    def target_uuids(self) -> Set[str]:
        with self._lock:
            return {
                track.zone.beacon_uuid
                for track in self._tracks.values()
                if track.zone.enabled
            }

    def summary(self) -> str:
        with self._lock:
            tracks = list(self._tracks.values())
        active = [track for track in tracks if track.state is ZoneState.INSIDE]
        lines = [
            "=== Geofence Summary ===",
            f"Active zones: {len(active)}",
            f"Inside any zone: {bool(active)}",
        ]
        for track in tracks:
            lines.append("")
            lines.append(f"Zone: {track.zone.name}")
            lines.append(f"  State: {track.state}")
            if track.beacon is not None:
                lines.append(f"  Distance: {track.beacon.distance_meters:.2f}m")
                lines.append(f"  RSSI: {track.beacon.rssi}dBm")
        return "\n".join(lines) + "\n"

    # State machine

    def _evaluate(
        self, track: _ZoneTrack, beacon: RegisteredBeacon, now: float
    ) -> Optional[GeofenceEvent]:
        zone = track.zone
        distance = beacon.distance_meters
        exit_threshold = zone.exit_threshold(self.timing.hysteresis_factor)
        is_inside = distance <= zone.radius_meters
        is_outside = distance > exit_threshold
        track.beacon = beacon

        LOGGER.debug(
            "Zone '%s' reading %.2fm (radius %.2fm, exit %.2fm, state %s)",
            zone.id,
            distance,
            zone.radius_meters,
            exit_threshold,
            track.state,
        )

        if track.state is ZoneState.INSIDE:
            if is_outside:
                return self._exit(track, beacon, now, REASON_DISTANCE)
            if is_inside and not track.dwell_notified and track.entered_at is not None:
                if now - track.entered_at >= self.timing.dwell_seconds:
                    track.dwell_notified = True
                    return self._event(GeofenceEventType.DWELL, track, beacon, now)
            return None

        if is_inside:
            track.state = ZoneState.INSIDE
            track.entered_at = now
            track.dwell_notified = False
            return self._event(GeofenceEventType.ENTER, track, beacon, now)
        if track.state is ZoneState.UNKNOWN:
            track.state = ZoneState.OUTSIDE
        return None

    def _exit(
        self, track: _ZoneTrack, beacon: RegisteredBeacon, now: float, reason: str
    ) -> GeofenceEvent:
        track.state = ZoneState.OUTSIDE
        track.entered_at = None
        track.dwell_notified = False
        return self._event(GeofenceEventType.EXIT, track, beacon, now, reason)

    def _expire_stale(self, now: float) -> List[GeofenceEvent]:
        events: List[GeofenceEvent] = []
        for track in self._tracks.values():
            beacon = track.beacon
            if track.state is not ZoneState.INSIDE or beacon is None:
                continue
            timeout = self._timeout_for(track.zone, beacon)
            age = self._age(beacon, now)
            if age > timeout:
                LOGGER.warning(
                    "Beacon data for zone '%s' is %.1fs old (> %.0fs), last distance %.2fm",
                    track.zone.id,
                    age,
                    timeout,
                    beacon.distance_meters,
                )
                events.append(self._exit(track, beacon, now, timeout_reason(timeout)))
        return events

    def _timeout_for(self, zone: GeofenceZone, beacon: RegisteredBeacon) -> float:
        if beacon.distance_meters <= zone.radius_meters:
            return self.timing.inside_timeout_seconds
        return self.timing.boundary_timeout_seconds

    def _age(self, beacon: RegisteredBeacon, now: float) -> float:
        # Time spent paused does not count as silence.
        reference = beacon.last_seen
        if self._resumed_at is not None and self._resumed_at > reference:
            reference = self._resumed_at
        return now - reference

    def _nearest_fresh(
        self, zone: GeofenceZone, beacons: List[RegisteredBeacon], now: float
    ) -> Optional[RegisteredBeacon]:
        candidates = [
            beacon
            for beacon in beacons
            if zone.matches(beacon.identity)
            and self._age(beacon, now) <= self._timeout_for(zone, beacon)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda beacon: beacon.distance_meters)

    @staticmethod
    def _should_follow(track: _ZoneTrack, beacon: RegisteredBeacon) -> bool:
        tracked = track.beacon
        if tracked is None or tracked.identity == beacon.identity:
            return True
        # A wildcard zone keeps following its current beacon unless another
        # matching beacon is at least as close.
        return beacon.distance_meters <= tracked.distance_meters

    def _event(
        self,
        event_type: GeofenceEventType,
        track: _ZoneTrack,
        beacon: RegisteredBeacon,
        now: float,
        reason: Optional[str] = None,
    ) -> GeofenceEvent:
        LOGGER.info(
            "zone_%s",
            event_type.value,
            extra={
                "zone_id": track.zone.id,
                "zone_name": track.zone.name,
                "beacon": beacon.identity.key,
                "distance_meters": round(beacon.distance_meters, 2),
                "reason": reason,
                "timestamp": now,
            },
        )
        return GeofenceEvent(
            type=event_type,
            zone=track.zone,
            beacon=beacon,
            timestamp=now,
            reason=reason,
        )

    def _log_unmatched(self, beacon: RegisteredBeacon) -> None:
        if not self._tracks:
            return
        uuid = beacon.identity.uuid
        count = self._unmatched_counts.get(uuid, 0)
        if count >= _UNMATCHED_LOG_LIMIT:
            return
        self._unmatched_counts[uuid] = count + 1
        LOGGER.debug("Beacon %s does not match any zone", beacon.identity.key)

    def _dispatch(self, events: List[GeofenceEvent]) -> None:
        if events and self._event_bus is not None:
            self._event_bus.emit_zone_events(events)

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now
