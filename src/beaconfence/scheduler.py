from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Callable, List, Optional, Protocol, Sequence

LOGGER = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> Cancellable:
        ...


@dataclass
class PeriodicTask:
    """Run ``callback`` every ``interval_seconds`` on a daemon thread.

    Once ``stop()`` returns, the callback is never invoked again for the
    stopped run, even if a wake-up was already pending.
    """

    name: str
    interval_seconds: float
    callback: Callable[[], None]
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _generation: int = field(default=0, init=False, repr=False)
    _stopped: bool = field(default=False, init=False, repr=False)

    def start(self) -> None:
        with self._lock:
            if self.is_running():
                return
            self._stopped = False
            self._generation += 1
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event, self._generation),
                name=f"beaconfence-{self.name}",
                daemon=True,
            )
            self._thread.start()

    def stop(self, timeout_seconds: float = 1.0) -> None:
        with self._lock:
            self._stopped = True
            self._generation += 1
            self._stop_event.set()
            thread = self._thread
            self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout_seconds)

    def is_running(self) -> bool:
        with self._lock:
            return (
                not self._stopped
                and self._thread is not None
                and self._thread.is_alive()
            )

    def run_once(self) -> bool:
        """Invoke the callback now unless the task has been stopped."""
        with self._lock:
            return self._tick(self._generation)

    def _run(self, stop_event: threading.Event, generation: int) -> None:
        interval = max(self.interval_seconds, 0.01)
        while not stop_event.wait(interval):
            with self._lock:
                if not self._tick(generation):
                    return

    def _tick(self, generation: int) -> bool:
        if self._stopped or generation != self._generation:
            return False
        try:
            self.callback()
        except Exception as exc:
            LOGGER.exception("Periodic task '%s' failed: %s", self.name, exc)
        return True


@dataclass
class TaskGroup:
    """Periodic tasks that are started and cancelled together."""

    tasks: Sequence[PeriodicTask] = field(default_factory=tuple)

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self, timeout_seconds: float = 1.0) -> None:
        for task in self.tasks:
            task.stop(timeout_seconds=timeout_seconds)

    def is_running(self) -> bool:
        return any(task.is_running() for task in self.tasks)


class DelayedCall:
    """One-shot timer whose callback cannot run once ``cancel()`` returns."""

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[], None],
        name: str = "beaconfence-delayed",
    ) -> None:
        self.delay_seconds = max(delay_seconds, 0.0)
        self._callback = callback
        self._lock = threading.Lock()
        self._cancelled = False
        self._fired = False
        self._timer = threading.Timer(self.delay_seconds, self._fire)
        self._timer.name = name
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
        self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    def _fire(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._fired = True
        try:
            self._callback()
        except Exception as exc:
            LOGGER.exception("Delayed call failed: %s", exc)


class ThreadingScheduler:
    """Default Scheduler backed by ``threading.Timer``."""

    def __init__(self) -> None:
        self._pending: List[DelayedCall] = []
        self._lock = threading.Lock()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> DelayedCall:
        call = DelayedCall(delay_seconds, callback)
        with self._lock:
            self._pending = [
                item for item in self._pending if not (item.fired or item.cancelled)
            ]
            self._pending.append(call)
        call.start()
        return call

    def cancel_all(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
        for call in pending:
            call.cancel()
