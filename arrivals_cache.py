# Arrivals cache: TTL snapshot, single-flight refresh, stale fallback, background retry.

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

log = logging.getLogger("arrivals_cache")

CACHE_TTL_SEC = 60.0
RETRY_INTERVAL_SEC = 2.0
DETAIL_LIMIT = 500
STALE_MESSAGE = "Serving stale cache while MARTA API recovers."

ArrivalRecord = Dict[str, Any]
Fetcher = Callable[[str], List[ArrivalRecord]]


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class UpstreamError(Exception):
    transient = False

    def __init__(self, status: int, detail: str):
        super().__init__(f"MARTA API error ({status}).")
        self.status = status
        self.detail = (detail or "")[:DETAIL_LIMIT]


class UpstreamTransientError(UpstreamError):
    transient = True


class UpstreamPermanentError(UpstreamError):
    pass


def upstream_error(status: int, detail: str) -> UpstreamError:
    # Only a plain 500 counts as upstream-internal; 502/503/504 are not retried.
    if status == 500:
        return UpstreamTransientError(status, detail)
    return UpstreamPermanentError(status, detail)


@dataclass(frozen=True)
class CacheEntry:
    payload: List[ArrivalRecord]
    fetched_at: float


@dataclass(frozen=True)
class CacheResult:
    data: List[ArrivalRecord]
    hit: bool
    stale: bool
    age_ms: int
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "data": self.data,
            "cache": {"hit": self.hit, "stale": self.stale, "ageMs": self.age_ms},
        }
        if self.message is not None:
            body["message"] = self.message
        return body


class _Call:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.waiters = 0
        self.value: Any = None
        self.error: Optional[BaseException] = None


class SingleFlight:
    """Collapses concurrent calls into one execution.

    The first caller runs ``fn``; everyone arriving while it runs blocks and
    gets the same return value or the same exception instance.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._call: Optional[_Call] = None

    @property
    def in_flight(self) -> bool:
        return self._call is not None

    def waiters(self) -> int:
        with self._lock:
            return self._call.waiters if self._call is not None else 0

    def do(self, fn: Callable[[], Any]) -> Any:
        with self._lock:
            call = self._call
            leader = call is None
            if call is None:
                call = _Call()
                self._call = call
            else:
                call.waiters += 1

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value

        try:
            call.value = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._call = None
            call.done.set()
        return call.value


class RetryLoop:
    """Background thread calling ``attempt`` every ``interval`` until it returns True."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._lock = threading.Lock()
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._stop is not None

    def arm(self, attempt: Callable[[], bool]) -> None:
        with self._lock:
            if self._stop is not None:
                return
            stop = self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(stop, attempt), name="arrivals-retry", daemon=True
            )
            self._thread.start()
        log.info("Retry armed, interval %.1fs", self.interval)

    def cancel(self, timeout: Optional[float] = 0) -> None:
        with self._lock:
            stop, thread = self._stop, self._thread
            self._stop = self._thread = None
        if stop is None:
            return
        stop.set()
        log.info("Retry disarmed")
        if timeout and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self, stop: threading.Event, attempt: Callable[[], bool]) -> None:
        try:
            while not stop.wait(self.interval):
                if attempt():
                    break
        finally:
            with self._lock:
                if self._stop is stop:
                    self._stop = self._thread = None


class ArrivalsCache:
    def __init__(
        self,
        fetcher: Fetcher,
        *,
        ttl_sec: float = CACHE_TTL_SEC,
        retry_interval_sec: float = RETRY_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entry: Optional[CacheEntry] = None
        self._lock = threading.Lock()
        self._flight = SingleFlight()
        self._retry = RetryLoop(retry_interval_sec)

    @property
    def entry(self) -> Optional[CacheEntry]:
        with self._lock:
            return self._entry

    @property
    def retry_armed(self) -> bool:
        return self._retry.armed

    def age_ms(self, entry: CacheEntry) -> int:
        return int(round((self._clock() - entry.fetched_at) * 1000))

    def is_fresh(self, entry: Optional[CacheEntry]) -> bool:
        return entry is not None and self._clock() - entry.fetched_at < self.ttl_sec

    def status(self) -> Dict[str, Any]:
        entry = self.entry
        return {
            "populated": entry is not None,
            "records": len(entry.payload) if entry is not None else 0,
            "ageMs": self.age_ms(entry) if entry is not None else None,
            "refreshInFlight": self._flight.in_flight,
            "retryArmed": self.retry_armed,
        }

    def get_arrivals(self, credential: Optional[str]) -> CacheResult:
        if not credential:
            raise MissingConfig("Missing MARTA_API_KEY environment variable.")

        entry = self.entry
        if self.is_fresh(entry):
            return CacheResult(entry.payload, hit=True, stale=False, age_ms=self.age_ms(entry))

        try:
            return self._result(*self._refresh_shared(credential, entry))
        except UpstreamError as exc:
            previous = self.entry
            if previous is not None:
                log.warning("Serving stale arrivals after refresh failure: %s", exc)
                return CacheResult(
                    previous.payload,
                    hit=True,
                    stale=True,
                    age_ms=self.age_ms(previous),
                    message=STALE_MESSAGE,
                )

        # Cold start: one more attempt, still through the single-flight slot.
        log.info("No cached arrivals, retrying upstream once")
        return self._result(*self._refresh_shared(credential, None))

    def refresh(self, credential: str, observed: Optional[CacheEntry] = None) -> CacheEntry:
        """Refresh through the single-flight slot.

        Skips the upstream call when the cache already holds a fresh entry
        other than ``observed``, i.e. someone refreshed after the caller looked.
        """
        return self._refresh_shared(credential, observed)[0]

    def close(self) -> None:
        self._retry.cancel(timeout=1.0)

    def _result(self, entry: CacheEntry, fetched: bool) -> CacheResult:
        if fetched:
            return CacheResult(entry.payload, hit=False, stale=False, age_ms=0)
        return CacheResult(entry.payload, hit=True, stale=False, age_ms=self.age_ms(entry))

    def _refresh_shared(
        self, credential: str, observed: Optional[CacheEntry]
    ) -> Tuple[CacheEntry, bool]:
        return self._flight.do(lambda: self._refresh(credential, observed))

    def _refresh(self, credential: str, observed: Optional[CacheEntry]) -> Tuple[CacheEntry, bool]:
        current = self.entry
        if current is not observed and self.is_fresh(current):
            return current, False

        try:
            payload = self._fetcher(credential)
        except UpstreamError as exc:
            log.warning("Arrivals refresh failed: status=%s detail=%s", exc.status, exc.detail)
            if current is not None and exc.transient:
                self._retry.arm(lambda: self._retry_attempt(credential))
            raise

        entry = CacheEntry(payload=payload, fetched_at=self._clock())
        with self._lock:
            self._entry = entry
        self._retry.cancel()
        log.debug("Arrivals cache refreshed with %d records", len(payload))
        return entry, True

    def _retry_attempt(self, credential: str) -> bool:
        try:
            self.refresh(credential, self.entry)
        except UpstreamError:
            return False
        return True
