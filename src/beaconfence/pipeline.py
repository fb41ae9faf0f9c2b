from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import EngineConfig
from .events import BeaconListener, EventBus, ZoneListener
from .filters import FilterBank
from .geofence import GeofenceEngine, ZoneDistance
from .ingestion.ibeacon import parse_advertisement
from .models import (
    BeaconEvent,
    BeaconEventType,
    BeaconObservation,
    GeofenceEvent,
    GeofenceZone,
    RawAdvertisement,
    RegisteredBeacon,
    ZoneState,
)
from .registry import BeaconRegistry
from .scanning import ScanBackend, ScanFilters, ScanSupervisor
from .scheduler import PeriodicTask, Scheduler, TaskGroup

LOGGER = logging.getLogger(__name__)

_DROPPED_LOG_LIMIT = 10


class GeofencePipeline:
    """Parse, smooth, register and geofence beacon advertisements.

    Stages are guarded by their own locks and always taken in the order
    ingest -> filter -> registry -> engine. The ingest lock spans the filter
    and registry updates so readings for one beacon are applied in arrival
    order. Events are dispatched on the thread that produced them, after the
    stage locks are released.

    ``backend`` is optional: without one the pipeline is driven entirely
    through ``process_advertisement`` / ``process_observation``.
    """

    def __init__(
        self,
        backend: Optional[ScanBackend] = None,
        *,
        config: Optional[EngineConfig] = None,
        event_bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EngineConfig()
        self.event_bus = event_bus or EventBus()
        self._clock = clock
        self.filters = FilterBank(self.config.filter)
        self.registry = BeaconRegistry(
            timeout_seconds=self.config.registry.beacon_timeout_seconds
        )
        self.engine = GeofenceEngine(
            event_bus=self.event_bus,
            timing=self.config.geofence,
            clock=clock,
        )
        self.supervisor: Optional[ScanSupervisor] = None
        if backend is not None:
            self.supervisor = ScanSupervisor(
                backend,
                on_advertisement=self.process_advertisement,
                event_bus=self.event_bus,
                retry_policy=self.config.retry,
                filters=ScanFilters(tuple(self.config.manufacturer_ids)),
                scheduler=scheduler,
                clock=clock,
            )
        self._ticks = TaskGroup(
            (
                PeriodicTask(
                    "eviction",
                    self.config.registry.eviction_interval_seconds,
                    self.evict_stale,
                ),
                PeriodicTask(
                    "geofence",
                    self.config.geofence.tick_interval_seconds,
                    self.run_geofence_tick,
                ),
            )
        )
        self._ingest_lock = threading.Lock()
        self._dropped = 0

    # Listeners

    def add_beacon_listener(self, listener: BeaconListener) -> None:
        self.event_bus.add_beacon_listener(listener)

    def remove_beacon_listener(self, listener: BeaconListener) -> None:
        self.event_bus.remove_beacon_listener(listener)

    def add_zone_listener(self, listener: ZoneListener) -> None:
        self.event_bus.add_zone_listener(listener)

    def remove_zone_listener(self, listener: ZoneListener) -> None:
        self.event_bus.remove_zone_listener(listener)

    # Queries

    def get_discovered_beacons(self) -> List[RegisteredBeacon]:
        return self.registry.snapshot()

    def get_zone_state(self, zone_id: str) -> ZoneState:
        return self.engine.get_zone_state(zone_id)

    def get_all_zone_states(self) -> Dict[str, Tuple[str, ZoneState]]:
        return self.engine.get_all_zone_states()

    def get_distances(self) -> Dict[str, ZoneDistance]:
        return self.engine.get_distances()

    def summary(self) -> str:
        lines = [self.engine.summary().rstrip("\n")]
        lines.append(f"Discovered beacons: {len(self.registry)}")
        if self.supervisor is not None:
            stats = self.supervisor.statistics
            lines.append(
                f"Scan: {self.supervisor.state} | results={stats.results} "
                f"beacons={stats.beacons} others={stats.other_devices}"
            )
        return "\n".join(lines) + "\n"

    # Zone configuration

    def add_zone(self, zone: GeofenceZone) -> None:
        self.engine.add_zone(zone)
        self._sync_allow_list()

    def remove_zone(self, zone_id: str) -> bool:
        removed = self.engine.remove_zone(zone_id)
        if removed:
            self._sync_allow_list()
        return removed

    def replace_all_zones(self, zones: Iterable[GeofenceZone]) -> None:
        self.engine.replace_all_zones(zones)
        self._sync_allow_list()

    def set_uuid_allow_list(self, uuids: Iterable[str]) -> None:
        self.registry.set_uuid_allow_list(uuids)

    def _sync_allow_list(self) -> None:
        if self.config.auto_allow_list:
            self.registry.set_uuid_allow_list(self.engine.target_uuids())

    # Lifecycle

    def start_monitoring(self) -> None:
        """Open the monitoring gate, make sure the ticks run and start scanning."""
        self.engine.set_monitoring(True, now=self._clock())
        self._ticks.start()
        if self.supervisor is not None:
            self.supervisor.start()
        LOGGER.info("Started geofence monitoring with %d zone(s)", len(self.engine.zones()))

    def stop_monitoring(self) -> None:
        """Pause: stop scanning and zone evaluation but keep the ticks scheduled."""
        self.engine.set_monitoring(False)
        if self.supervisor is not None:
            self.supervisor.stop()
        LOGGER.info("Stopped geofence monitoring")

    def stop(self) -> None:
        """Stop scanning and cancel both periodic ticks; state is kept."""
        self.engine.set_monitoring(False)
        if self.supervisor is not None:
            self.supervisor.stop()
        self._ticks.stop()

    def cleanup(self) -> None:
        """Tear everything down. Safe to call more than once."""
        self.stop()
        self.event_bus.clear()
        with self._ingest_lock:
            self.filters.clear()
            self.registry.clear()
        self.engine.clear_zones()
        self.registry.set_uuid_allow_list(())
        self._dropped = 0
        LOGGER.info("Geofence pipeline cleaned up")

    @property
    def ticks_running(self) -> bool:
        return self._ticks.is_running()

    # Processing

    def process_advertisement(self, advertisement: RawAdvertisement) -> bool:
        """Feed one raw advertisement; return True if it was an iBeacon frame."""
        observation = parse_advertisement(advertisement)
        if observation is None:
            if self._dropped < _DROPPED_LOG_LIMIT:
                self._dropped += 1
                LOGGER.debug(
                    "Dropped non-iBeacon advertisement from %s (company 0x%04X, %d bytes)",
                    advertisement.address or "unknown",
                    advertisement.manufacturer_id,
                    len(advertisement.payload or b""),
                )
            return False
        self.process_observation(observation)
        return True

    def process_observation(self, observation: BeaconObservation) -> Optional[RegisteredBeacon]:
        """Smooth and register one observation; None if the allow-list rejects it."""
        identity = observation.identity
        if not self.registry.accepts(identity):
            return None

        with self._ingest_lock:
            smoothed = self.filters.filter(identity, observation.distance_meters)
            beacon = RegisteredBeacon(
                identity=identity,
                distance_meters=smoothed,
                rssi=observation.rssi,
                last_seen=observation.timestamp,
            )
            discovered = self.registry.update(beacon)

        if discovered:
            LOGGER.info(
                "beacon_discovered",
                extra={
                    "beacon": identity.key,
                    "rssi": observation.rssi,
                    "distance_meters": round(smoothed, 2),
                },
            )
            self.event_bus.emit_beacon_event(
                BeaconEvent(
                    type=BeaconEventType.DISCOVERED,
                    beacon=beacon,
                    timestamp=observation.timestamp,
                )
            )
            self.engine.handle_beacon_discovered(beacon, now=observation.timestamp)
        return beacon

    def evict_stale(self, now: Optional[float] = None) -> List[RegisteredBeacon]:
        now = self._clock() if now is None else now
        with self._ingest_lock:
            evicted = self.registry.evict_stale(now)
            for beacon in evicted:
                self.filters.discard(beacon.identity)

        for beacon in evicted:
            LOGGER.info(
                "beacon_lost",
                extra={
                    "beacon": beacon.identity.key,
                    "last_seen": beacon.last_seen,
                    "age_seconds": round(now - beacon.last_seen, 1),
                },
            )
            self.event_bus.emit_beacon_event(
                BeaconEvent(type=BeaconEventType.LOST, beacon=beacon, timestamp=now)
            )
            self.engine.handle_beacon_lost(beacon, now=now)
        return evicted

    def run_geofence_tick(self, now: Optional[float] = None) -> List[GeofenceEvent]:
        return self.engine.tick(self.registry.snapshot(), now=now)
