from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, List, Protocol, TypeVar

from .models import (
    BeaconEvent,
    BeaconEventType,
    GeofenceEvent,
    GeofenceEventType,
    ScanErrorEvent,
)

_Listener = TypeVar("_Listener")


class BeaconListener(Protocol):
    def on_beacon_discovered(self, event: BeaconEvent) -> None:
        ...

    def on_beacon_lost(self, event: BeaconEvent) -> None:
        ...

    def on_scan_error(self, event: ScanErrorEvent) -> None:
        ...


class ZoneListener(Protocol):
    def on_zone_enter(self, event: GeofenceEvent) -> None:
        ...

    def on_zone_exit(self, event: GeofenceEvent) -> None:
        ...

    def on_zone_dwell(self, event: GeofenceEvent) -> None:
        ...


class EventBus:
    """Synchronous fan-out of beacon and zone events.

    Listeners run in registration order on the thread that emits the event,
    so they must return quickly. A listener that raises is logged and the
    remaining listeners still run.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._beacon_listeners: List[BeaconListener] = []
        self._zone_listeners: List[ZoneListener] = []
        self._lock = threading.Lock()

    def add_beacon_listener(self, listener: BeaconListener) -> None:
        with self._lock:
            if listener not in self._beacon_listeners:
                self._beacon_listeners.append(listener)

    def remove_beacon_listener(self, listener: BeaconListener) -> None:
        with self._lock:
            if listener in self._beacon_listeners:
                self._beacon_listeners.remove(listener)

    def add_zone_listener(self, listener: ZoneListener) -> None:
        with self._lock:
            if listener not in self._zone_listeners:
                self._zone_listeners.append(listener)

    def remove_zone_listener(self, listener: ZoneListener) -> None:
        with self._lock:
            if listener in self._zone_listeners:
                self._zone_listeners.remove(listener)

    def clear(self) -> None:
        with self._lock:
            self._beacon_listeners.clear()
            self._zone_listeners.clear()

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._beacon_listeners) + len(self._zone_listeners)

    def emit_beacon_event(self, event: BeaconEvent) -> None:
        with self._lock:
            listeners = list(self._beacon_listeners)
        if event.type is BeaconEventType.DISCOVERED:
            self._dispatch(listeners, lambda listener: listener.on_beacon_discovered(event))
        else:
            self._dispatch(listeners, lambda listener: listener.on_beacon_lost(event))

    def emit_scan_error(self, event: ScanErrorEvent) -> None:
        with self._lock:
            listeners = list(self._beacon_listeners)
        self._dispatch(listeners, lambda listener: listener.on_scan_error(event))

    def emit_zone_event(self, event: GeofenceEvent) -> None:
        with self._lock:
            listeners = list(self._zone_listeners)
        if event.type is GeofenceEventType.ENTER:
            self._dispatch(listeners, lambda listener: listener.on_zone_enter(event))
        elif event.type is GeofenceEventType.EXIT:
            self._dispatch(listeners, lambda listener: listener.on_zone_exit(event))
        else:
            self._dispatch(listeners, lambda listener: listener.on_zone_dwell(event))

    def emit_zone_events(self, events: Iterable[GeofenceEvent]) -> None:
        for event in events:
            self.emit_zone_event(event)

    def _dispatch(
        self,
        listeners: List[_Listener],
        notify: Callable[[_Listener], None],
    ) -> None:
        for listener in listeners:
            try:
                notify(listener)
            except Exception as exc:
                self._logger.exception("Event listener %r failed: %s", listener, exc)
