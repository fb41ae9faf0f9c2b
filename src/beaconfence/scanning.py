from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
import threading
import time
from typing import Callable, Optional, Protocol, Tuple

from .config import APPLE_COMPANY_ID, RetryPolicy
from .events import EventBus
from .models import RawAdvertisement, ScanErrorEvent, ScanFailure
from .scheduler import Cancellable, Scheduler, ThreadingScheduler

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanStartError(RuntimeError):
    failure: ScanFailure
    message: str = ""

    def __str__(self) -> str:
        return self.message or f"Scan start failed: {self.failure}"


@dataclass(frozen=True)
class ScanFilters:
    manufacturer_ids: Tuple[int, ...] = (APPLE_COMPANY_ID,)


class ScanCallback(Protocol):
    def on_scan_result(self, advertisement: RawAdvertisement) -> None:
        ...

    def on_scan_failed(self, failure: ScanFailure) -> None:
        ...


class ScanBackend(Protocol):
    """The radio scan primitive.

    ``start_scan`` raises ScanStartError when the scan cannot be registered.
    ``stop_scan(None)`` must release any scan the backend still holds for
    this client; it is called before every start and on stop.
    """

    def is_available(self) -> bool:
        ...

    def start_scan(self, filters: ScanFilters, callback: ScanCallback) -> object:
        ...

    def stop_scan(self, handle: Optional[object]) -> None:
        ...


class ScanState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    FAILED = "failed"
    BACKOFF = "backoff"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ScanStatistics:
    started_at: Optional[float] = None
    results: int = 0
    beacons: int = 0
    other_devices: int = 0


class ScanSupervisor:
    """Keep the external scan alive across transient registration failures.

    ``REGISTRATION_FAILED`` is retried after 1 s, 2 s and 3 s; the next
    consecutive failure surfaces a ScanErrorEvent and retrying stops. Any
    other failure class is surfaced immediately. Scheduled retries belong to
    a generation; ``stop()`` bumps the generation so a retry that fires late
    does nothing.
    """

    def __init__(
        self,
        backend: ScanBackend,
        *,
        on_advertisement: Callable[[RawAdvertisement], bool],
        event_bus: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        filters: Optional[ScanFilters] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._on_advertisement = on_advertisement
        self._event_bus = event_bus
        self._policy = retry_policy or RetryPolicy()
        self._filters = filters or ScanFilters()
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self._lock = threading.RLock()
        self._stats_lock = threading.Lock()
        self._state = ScanState.IDLE
        self._handle: Optional[object] = None
        self._pending: Optional[Cancellable] = None
        self._generation = 0
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._stats = ScanStatistics()

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ScanState.ACTIVE

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def statistics(self) -> ScanStatistics:
        with self._stats_lock:
            return self._stats

    def start(self) -> None:
        error: Optional[ScanErrorEvent] = None
        with self._lock:
            if self._state in (ScanState.ACTIVE, ScanState.STARTING):
                LOGGER.debug("Scan already %s", self._state)
                return
            if self._state is ScanState.BACKOFF and self._pending is not None:
                LOGGER.debug("Scan restart already scheduled")
                return
            if not self._backend_available():
                LOGGER.warning("Bluetooth scanning is not available")
                return

            now = self._clock()
            if self._failure_count > self._policy.max_retries:
                last_failure = self._last_failure_time or 0.0
                if now - last_failure < self._policy.failure_window_seconds:
                    LOGGER.warning(
                        "Too many registration failures (%d), waiting %.1fs before retry",
                        self._failure_count,
                        self._policy.cooldown_seconds,
                    )
                    self._schedule_locked(self._policy.cooldown_seconds, self._cooldown_elapsed)
                    return
                self._failure_count = 0

            error = self._attempt_start_locked()
        self._emit(error)

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
            previous = self._state
            self._state = ScanState.STOPPED
            # A stop/start cycle must not skip the cool-down after failures.
            if previous is ScanState.ACTIVE:
                self._failure_count = 0
            self._release_handle_locked()

        stats = self.statistics
        if previous is ScanState.ACTIVE and stats.started_at is not None:
            LOGGER.info(
                "Stopped beacon scanning: duration=%.0fs results=%d beacons=%d others=%d",
                self._clock() - stats.started_at,
                stats.results,
                stats.beacons,
                stats.other_devices,
            )
        else:
            LOGGER.debug("Scan stop requested while %s", previous)

    def on_scan_result(self, advertisement: RawAdvertisement) -> None:
        # Results may race ahead of start_scan() returning.
        if self._state not in (ScanState.ACTIVE, ScanState.STARTING):
            return
        is_beacon = self._on_advertisement(advertisement)
        with self._stats_lock:
            self._stats = replace(
                self._stats,
                results=self._stats.results + 1,
                beacons=self._stats.beacons + (1 if is_beacon else 0),
                other_devices=self._stats.other_devices + (0 if is_beacon else 1),
            )

    def on_scan_failed(self, failure: ScanFailure) -> None:
        with self._lock:
            if self._state in (ScanState.IDLE, ScanState.STOPPED):
                LOGGER.debug("Ignoring scan failure %s while %s", failure, self._state)
                return
            error = self._record_failure_locked(failure, f"Scan failed: {failure}")
        self._emit(error)

    def _backend_available(self) -> bool:
        try:
            return bool(self._backend.is_available())
        except Exception as exc:
            LOGGER.warning("Bluetooth availability check failed: %s", exc)
            return False

    def _attempt_start_locked(self) -> Optional[ScanErrorEvent]:
        self._release_handle_locked()
        self._state = ScanState.STARTING
        try:
            handle = self._backend.start_scan(self._filters, self)
        except ScanStartError as exc:
            return self._record_failure_locked(exc.failure, str(exc))
        except Exception as exc:
            LOGGER.exception("Failed to start scanning: %s", exc)
            return self._record_failure_locked(ScanFailure.INTERNAL_ERROR, str(exc))

        self._handle = handle
        self._state = ScanState.ACTIVE
        self._failure_count = 0
        with self._stats_lock:
            self._stats = ScanStatistics(started_at=self._clock())
        LOGGER.info(
            "Started beacon scanning (manufacturer ids: %s)",
            ", ".join(f"0x{company:04X}" for company in self._filters.manufacturer_ids),
        )
        return None

    def _record_failure_locked(
        self, failure: ScanFailure, message: str
    ) -> Optional[ScanErrorEvent]:
        now = self._clock()
        self._state = ScanState.FAILED
        self._release_handle_locked()
        LOGGER.error("Beacon scan failed: %s (%s)", failure, message)

        if failure is not ScanFailure.REGISTRATION_FAILED:
            return ScanErrorEvent(failure=failure, message=message, attempts=1, timestamp=now)

        self._failure_count += 1
        self._last_failure_time = now
        delay = self._policy.delay_for(self._failure_count)
        if delay is not None:
            LOGGER.warning(
                "Scan registration failed (attempt %d/%d), retrying in %.1fs",
                self._failure_count,
                self._policy.max_retries,
                delay,
            )
            self._schedule_locked(delay, self._attempt_start_locked)
            return None

        LOGGER.error(
            "Max registration retries reached (%d); giving up until the next start",
            self._policy.max_retries,
        )
        return ScanErrorEvent(
            failure=failure,
            message=message,
            attempts=self._failure_count,
            timestamp=now,
        )

    def _cooldown_elapsed(self) -> Optional[ScanErrorEvent]:
        self._failure_count = 0
        return self._attempt_start_locked()

    def _schedule_locked(
        self, delay_seconds: float, action: Callable[[], Optional[ScanErrorEvent]]
    ) -> None:
        generation = self._generation
        self._state = ScanState.BACKOFF
        self._pending = self._scheduler.call_later(
            delay_seconds, lambda: self._run_scheduled(generation, action)
        )

    def _run_scheduled(
        self, generation: int, action: Callable[[], Optional[ScanErrorEvent]]
    ) -> None:
        with self._lock:
            if generation != self._generation or self._state is not ScanState.BACKOFF:
                return
            self._pending = None
            error = action()
        self._emit(error)

    def _release_handle_locked(self) -> None:
        handle, self._handle = self._handle, None
        try:
            self._backend.stop_scan(handle)
        except Exception as exc:
            LOGGER.warning("Error releasing scan handle: %s", exc)

    def _emit(self, error: Optional[ScanErrorEvent]) -> None:
        if error is not None and self._event_bus is not None:
            self._event_bus.emit_scan_error(error)
