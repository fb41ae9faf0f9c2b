from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional

from .models import BeaconIdentity, RegisteredBeacon, normalize_uuid

LOGGER = logging.getLogger(__name__)


@dataclass
class BeaconRegistry:
    """Latest smoothed reading per beacon identity.

    Only the first sighting of an identity counts as a discovery. Later
    sightings replace the entry silently; consumers that need live distances
    read ``snapshot()`` instead of waiting for events.
    """

    timeout_seconds: float = 60.0
    _beacons: Dict[BeaconIdentity, RegisteredBeacon] = field(
        default_factory=dict, init=False, repr=False
    )
    _allow_list: FrozenSet[str] = field(default=frozenset(), init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def update(self, beacon: RegisteredBeacon) -> bool:
        """Upsert ``beacon``; return True if its identity was not known."""
        with self._lock:
            discovered = beacon.identity not in self._beacons
            self._beacons[beacon.identity] = beacon
        return discovered

    def evict_stale(
        self,
        now: float,
        timeout_seconds: Optional[float] = None,
    ) -> List[RegisteredBeacon]:
        if timeout_seconds is None:
            timeout_seconds = self.timeout_seconds
        evicted: List[RegisteredBeacon] = []
        with self._lock:
            for identity, beacon in list(self._beacons.items()):
                if now - beacon.last_seen > timeout_seconds:
                    evicted.append(self._beacons.pop(identity))
        return evicted

    def snapshot(self) -> List[RegisteredBeacon]:
        with self._lock:
            return list(self._beacons.values())

    def get(self, identity: BeaconIdentity) -> Optional[RegisteredBeacon]:
        with self._lock:
            return self._beacons.get(identity)

    def clear(self) -> None:
        with self._lock:
            self._beacons.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._beacons)

    def set_uuid_allow_list(self, uuids: Iterable[str]) -> None:
        allow_list = frozenset(normalize_uuid(uuid) for uuid in uuids)
        with self._lock:
            changed = allow_list != self._allow_list
            self._allow_list = allow_list
        if not changed:
            return
        if allow_list:
            LOGGER.info("Updated UUID allow-list: %s", ", ".join(sorted(allow_list)))
        else:
            LOGGER.info("Cleared UUID allow-list (accepting all UUIDs)")

    @property
    def uuid_allow_list(self) -> FrozenSet[str]:
        return self._allow_list

    def accepts(self, identity: BeaconIdentity) -> bool:
        allow_list = self._allow_list
        return not allow_list or identity.uuid in allow_list
