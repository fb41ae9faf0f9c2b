from __future__ import annotations

import asyncio
import concurrent.futures
from dataclasses import dataclass, field
import importlib.util
import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..models import RawAdvertisement, ScanFailure
from ..scanning import ScanCallback, ScanFilters, ScanStartError

LOGGER = logging.getLogger(__name__)

_UNSUPPORTED_MARKERS = (
    "not supported",
    "no bluetooth adapters",
    "not available",
    "powered off",
    "not found",
)
_ALREADY_STARTED_MARKERS = ("already scanning", "already started")
_REGISTRATION_MARKERS = ("inprogress", "in progress", "busy", "resource", "timed out")


@dataclass(frozen=True)
class BleakScanConfig:
    adapter: Optional[str] = None
    scanning_mode: str = "active"
    start_timeout_seconds: float = 10.0
    stop_timeout_seconds: float = 5.0


def classify_bleak_error(exc: BaseException) -> ScanFailure:
    """Map a bleak/BlueZ start failure onto the scan failure classes."""
    if isinstance(exc, (asyncio.TimeoutError, concurrent.futures.TimeoutError, TimeoutError)):
        return ScanFailure.REGISTRATION_FAILED
    message = str(exc).lower()
    if any(marker in message for marker in _ALREADY_STARTED_MARKERS):
        return ScanFailure.ALREADY_STARTED
    if any(marker in message for marker in _REGISTRATION_MARKERS):
        return ScanFailure.REGISTRATION_FAILED
    if any(marker in message for marker in _UNSUPPORTED_MARKERS):
        return ScanFailure.FEATURE_UNSUPPORTED
    return ScanFailure.INTERNAL_ERROR


@dataclass
class _BleakScanHandle:
    scanner: object
    filters: ScanFilters


class BleakScanBackend:
    """Continuous BLE scan through ``bleak.BleakScanner``.

    bleak is asyncio-based; the backend owns a private event loop running on
    a daemon thread so callers can stay synchronous. Detection callbacks run
    on that loop thread.
    """

    def __init__(
        self,
        config: Optional[BleakScanConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or BleakScanConfig()
        self._clock = clock
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._active: Optional[_BleakScanHandle] = None
        self._starting: Optional[object] = None
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return importlib.util.find_spec("bleak") is not None

    def start_scan(self, filters: ScanFilters, callback: ScanCallback) -> _BleakScanHandle:
        loop = self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(self._start(filters, callback), loop)
        try:
            scanner = future.result(timeout=self._config.start_timeout_seconds)
        except Exception as exc:
            future.cancel()
            # The scanner may still come up on the loop after a timeout.
            discard = asyncio.run_coroutine_threadsafe(self._discard_starting(), loop)
            try:
                discard.result(timeout=self._config.stop_timeout_seconds)
            except Exception as stop_exc:
                LOGGER.warning("Error discarding abandoned BLE scanner: %s", stop_exc)
            raise ScanStartError(
                failure=classify_bleak_error(exc),
                message=f"Failed to start BLE scan: {exc}",
            ) from exc

        handle = _BleakScanHandle(scanner=scanner, filters=filters)
        with self._lock:
            self._active = handle
            self._starting = None
        return handle

    def stop_scan(self, handle: Optional[object]) -> None:
        with self._lock:
            target = handle if isinstance(handle, _BleakScanHandle) else self._active
            if target is self._active:
                self._active = None
        if target is None or self._loop is None:
            return
        future = asyncio.run_coroutine_threadsafe(target.scanner.stop(), self._loop)
        future.result(timeout=self._config.stop_timeout_seconds)

    def close(self) -> None:
        """Stop any scan and shut down the loop thread."""
        try:
            self.stop_scan(None)
        finally:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
            if loop is not None:
                loop.call_soon_threadsafe(loop.stop)
            if thread is not None:
                thread.join(timeout=self._config.stop_timeout_seconds)
            if loop is not None and not loop.is_running():
                loop.close()

    async def _start(self, filters: ScanFilters, callback: ScanCallback) -> object:
        from bleak import BleakScanner

        kwargs: Dict[str, object] = {"scanning_mode": self._config.scanning_mode}
        if self._config.adapter:
            kwargs["adapter"] = self._config.adapter
        scanner = BleakScanner(
            detection_callback=lambda device, advertisement: self._handle_detection(
                device, advertisement, filters, callback
            ),
            **kwargs,
        )
        self._starting = scanner
        try:
            await scanner.start()
        except asyncio.CancelledError:
            await self._stop_quietly(scanner)
            raise
        if self._starting is not scanner:
            # start_scan gave up on this scanner while it was starting.
            await self._stop_quietly(scanner)
            raise asyncio.CancelledError()
        return scanner

    async def _discard_starting(self) -> None:
        """Stop a scanner whose start was abandoned by ``start_scan``."""
        scanner, self._starting = self._starting, None
        if scanner is not None:
            await self._stop_quietly(scanner)

    async def _stop_quietly(self, scanner: object) -> None:
        try:
            await scanner.stop()
        except Exception as exc:
            LOGGER.warning("Error stopping abandoned BLE scanner: %s", exc)

    def _handle_detection(
        self,
        device: object,
        advertisement: object,
        filters: ScanFilters,
        callback: ScanCallback,
    ) -> None:
        rssi = _resolve_rssi(device, advertisement)
        if rssi is None:
            return
        manufacturer_data = getattr(advertisement, "manufacturer_data", None)
        if not isinstance(manufacturer_data, Mapping):
            return
        timestamp = self._clock()
        address = getattr(device, "address", None)
        for company_id, data in manufacturer_data.items():
            if company_id not in filters.manufacturer_ids:
                continue
            raw = RawAdvertisement(
                timestamp=timestamp,
                manufacturer_id=int(company_id),
                payload=bytes(data),
                rssi=rssi,
                address=address,
            )
            try:
                callback.on_scan_result(raw)
            except Exception as exc:
                LOGGER.exception("Scan result handler failed: %s", exc)

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None:
                loop = asyncio.new_event_loop()
                thread = threading.Thread(
                    target=loop.run_forever,
                    name="beaconfence-bleak",
                    daemon=True,
                )
                thread.start()
                self._loop = loop
                self._thread = thread
            return self._loop


def _resolve_rssi(device: object, advertisement: object) -> Optional[int]:
    for candidate in (
        getattr(advertisement, "rssi", None),
        getattr(device, "rssi", None),
    ):
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


@dataclass(frozen=True)
class OfflineAdvertisement:
    manufacturer_id: int
    payload: bytes
    rssi: int
    offset_seconds: float = 0.0
    address: Optional[str] = None


@dataclass
class _OfflineScanHandle:
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class OfflineScanBackend:
    """Replay recorded advertisements as if they came from the radio.

    With ``realtime`` enabled each advertisement is delivered on a worker
    thread ``offset_seconds`` after the scan starts; otherwise nothing is
    delivered until ``replay()`` is called. ``start_failures`` are raised
    from successive ``start_scan`` calls, one per call, before a scan is
    allowed to start.
    """

    def __init__(
        self,
        advertisements: Sequence[OfflineAdvertisement] = (),
        *,
        start_failures: Sequence[ScanFailure] = (),
        realtime: bool = True,
        available: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._advertisements = sorted(advertisements, key=lambda item: item.offset_seconds)
        self._start_failures: List[ScanFailure] = list(start_failures)
        self._realtime = realtime
        self._available = available
        self._clock = clock
        self._lock = threading.Lock()
        self._callback: Optional[ScanCallback] = None
        self._filters: Optional[ScanFilters] = None
        self._active: Optional[_OfflineScanHandle] = None
        self.start_calls = 0
        self.stop_calls = 0

    def is_available(self) -> bool:
        return self._available

    @property
    def scanning(self) -> bool:
        return self._active is not None

    def start_scan(self, filters: ScanFilters, callback: ScanCallback) -> _OfflineScanHandle:
        with self._lock:
            self.start_calls += 1
            if self._start_failures:
                failure = self._start_failures.pop(0)
                raise ScanStartError(failure=failure, message=f"Injected start failure: {failure}")
            handle = _OfflineScanHandle()
            self._active = handle
            self._callback = callback
            self._filters = filters
        if self._realtime and self._advertisements:
            handle.thread = threading.Thread(
                target=self._replay_realtime,
                args=(handle, callback, filters),
                name="beaconfence-offline",
                daemon=True,
            )
            handle.thread.start()
        return handle

    def stop_scan(self, handle: Optional[object]) -> None:
        with self._lock:
            self.stop_calls += 1
            target = handle if isinstance(handle, _OfflineScanHandle) else self._active
            if target is self._active:
                self._active = None
                self._callback = None
        if target is None:
            return
        target.stop_event.set()
        thread = target.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def replay(self) -> int:
        """Deliver every advertisement to the running scan; return the count."""
        with self._lock:
            callback, filters = self._callback, self._filters
        if callback is None or filters is None:
            return 0
        delivered = 0
        for item in self._advertisements:
            if self._deliver(item, callback, filters):
                delivered += 1
        return delivered

    def fail(self, failure: ScanFailure) -> None:
        """Report an asynchronous scan failure to the running scan."""
        with self._lock:
            callback = self._callback
        if callback is not None:
            callback.on_scan_failed(failure)

    def _replay_realtime(
        self,
        handle: _OfflineScanHandle,
        callback: ScanCallback,
        filters: ScanFilters,
    ) -> None:
        started = time.monotonic()
        for item in self._advertisements:
            remaining = item.offset_seconds - (time.monotonic() - started)
            if handle.stop_event.wait(max(remaining, 0.0)):
                return
            try:
                self._deliver(item, callback, filters)
            except Exception as exc:
                LOGGER.exception("Offline replay handler failed: %s", exc)

    def _deliver(
        self,
        item: OfflineAdvertisement,
        callback: ScanCallback,
        filters: ScanFilters,
    ) -> bool:
        if item.manufacturer_id not in filters.manufacturer_ids:
            return False
        callback.on_scan_result(
            RawAdvertisement(
                timestamp=self._clock(),
                manufacturer_id=item.manufacturer_id,
                payload=item.payload,
                rssi=item.rssi,
                address=item.address,
            )
        )
        return True
