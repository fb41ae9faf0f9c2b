"""
Distance smoothing for beacon observations.

Each beacon identity gets its own two-stage filter: a scalar Kalman filter
tracks slow drift of a near-stationary emitter, and a short median window
removes the single-frame multipath spikes the Kalman stage would otherwise
absorb only gradually.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import threading
from typing import Deque, Dict

from .config import FilterConfig
from .models import BeaconIdentity


@dataclass
class DistanceFilter:
    """
    Kalman + median smoothing pipeline for one beacon.

    State model: x(k) = x(k-1) + w, w ~ N(0, Q)
    Observation model: z(k) = x(k) + v, v ~ N(0, R)

    Attributes:
        estimate: Current Kalman estimate (meters).
        covariance: Current error covariance.
        initialized: Whether the first in-range reading has been seen.
    """

    process_noise: float = 0.05
    measurement_noise: float = 3.0
    window_size: int = 3
    max_distance_meters: float = 50.0
    estimate: float = 0.0
    covariance: float = 1.0
    initialized: bool = False
    _window: Deque[float] = field(default_factory=deque, init=False, repr=False)

    @classmethod
    def from_config(cls, config: FilterConfig) -> "DistanceFilter":
        return cls(
            process_noise=config.process_noise,
            measurement_noise=config.measurement_noise,
            window_size=config.median_window,
            max_distance_meters=config.max_distance_meters,
        )

    def filter(self, raw_distance: float) -> float:
        """Return the smoothed distance for a new raw reading."""
        if raw_distance < 0.0 or raw_distance > self.max_distance_meters:
            # The very first reading cannot be rejected: there is nothing
            # to fall back to yet.
            return self.estimate if self.initialized else raw_distance

        return self._median(self._kalman(raw_distance))

    def _kalman(self, measurement: float) -> float:
        if not self.initialized:
            self.estimate = measurement
            self.covariance = 1.0
            self.initialized = True
            return self.estimate

        predicted_covariance = self.covariance + self.process_noise
        gain = predicted_covariance / (predicted_covariance + self.measurement_noise)
        self.estimate += gain * (measurement - self.estimate)
        self.covariance = (1.0 - gain) * predicted_covariance
        return self.estimate

    def _median(self, value: float) -> float:
        self._window.append(value)
        while len(self._window) > self.window_size:
            self._window.popleft()
        ordered = sorted(self._window)
        return ordered[len(ordered) // 2]


class FilterBank:
    """Thread-safe map of beacon identity -> DistanceFilter."""

    def __init__(self, config: FilterConfig | None = None) -> None:
        self._config = config or FilterConfig()
        self._filters: Dict[BeaconIdentity, DistanceFilter] = {}
        self._lock = threading.Lock()

    def filter(self, identity: BeaconIdentity, raw_distance: float) -> float:
        with self._lock:
            distance_filter = self._filters.get(identity)
            if distance_filter is None:
                distance_filter = DistanceFilter.from_config(self._config)
                self._filters[identity] = distance_filter
            return distance_filter.filter(raw_distance)

    def discard(self, identity: BeaconIdentity) -> None:
        with self._lock:
            self._filters.pop(identity, None)

    def clear(self) -> None:
        with self._lock:
            self._filters.clear()

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._filters

    def __len__(self) -> int:
        with self._lock:
            return len(self._filters)
