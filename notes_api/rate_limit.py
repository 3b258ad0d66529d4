import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Window(Enum):
    MINUTE = 60_000
    DAY = 86_400_000

    @property
    def duration_ms(self) -> int:
        return self.value


@dataclass
class CounterRecord:
    hits: int
    reset_at: int


def _require_cap(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


@dataclass
class RateLimitConfig:
    """Limiter policy. Caps apply per identifier."""

    requests_per_minute: int = 5
    requests_per_day: int = 20
    sweep_interval_s: float = 60.0

    def __post_init__(self):
        _require_cap("requests_per_minute", self.requests_per_minute)
        _require_cap("requests_per_day", self.requests_per_day)
        if not math.isfinite(self.sweep_interval_s) or self.sweep_interval_s <= 0:
            raise ValueError(
                f"sweep_interval_s must be positive and finite, got {self.sweep_interval_s!r}"
            )


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset_at: int

    @property
    def reset_seconds(self) -> int:
        return math.ceil(self.reset_at / 1000)

    def retry_after(self, now_ms: float) -> int:
        return max(0, math.ceil((self.reset_at - now_ms) / 1000))

    def headers(self, now_ms: float) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.success:
            headers["Retry-After"] = str(self.retry_after(now_ms))
        return headers


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowLimiter:
    """Per-identifier request counter over a minute and a day window.

    A request is admitted only when both windows have quota left; admitted
    requests count against both, denied ones against neither. Counters live
    in process memory and are lost on restart.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.config = config or RateLimitConfig()
        self.clock = clock or wall_clock_ms
        self.stores: dict[Window, dict[str, CounterRecord]] = {
            Window.MINUTE: {},
            Window.DAY: {},
        }
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def check(
        self,
        identifier: str,
        requests_per_minute: int | None = None,
        requests_per_day: int | None = None,
    ) -> RateLimitResult:
        if not isinstance(identifier, str) or not identifier.strip():
            raise ValueError("identifier must be a non-empty string")
        per_minute = _require_cap(
            "requests_per_minute",
            self.config.requests_per_minute if requests_per_minute is None else requests_per_minute,
        )
        per_day = _require_cap(
            "requests_per_day",
            self.config.requests_per_day if requests_per_day is None else requests_per_day,
        )
        caps = {Window.MINUTE: per_minute, Window.DAY: per_day}

        with self._lock:
            now = self.clock()
            records = {window: self._current(window, identifier, now) for window in Window}
            over = [window for window in Window if records[window].hits >= caps[window]]
            if not over:
                for record in records.values():
                    record.hits += 1

            minute_remaining = max(0, per_minute - records[Window.MINUTE].hits)
            day_remaining = max(0, per_day - records[Window.DAY].hits)
            # minute wins ties
            chosen = Window.MINUTE if minute_remaining <= day_remaining else Window.DAY
            result = RateLimitResult(
                success=not over,
                limit=caps[chosen],
                remaining=min(minute_remaining, day_remaining),
                reset_at=records[chosen].reset_at,
            )

        if over:
            logger.info(
                "rate limit exceeded for %s (%s)",
                identifier,
                ",".join(window.name.lower() for window in over),
            )
        return result

    def _current(self, window: Window, identifier: str, now: float) -> CounterRecord:
        store = self.stores[window]
        record = store.get(identifier)
        if record is None or record.reset_at < now:
            record = CounterRecord(hits=0, reset_at=int(now) + window.duration_ms)
            store[identifier] = record
        return record

    def sweep(self) -> int:
        removed = 0
        with self._lock:
            now = self.clock()
            for store in self.stores.values():
                expired = [key for key, record in store.items() if record.reset_at < now]
                for key in expired:
                    del store[key]
                removed += len(expired)
        logger.debug("rate limit sweep removed %d records", removed)
        return removed

    def snapshot(self, identifier: str) -> dict[str, CounterRecord]:
        with self._lock:
            return {
                window.name.lower(): CounterRecord(record.hits, record.reset_at)
                for window in Window
                if (record := self.stores[window].get(identifier)) is not None
            }

    def size(self) -> dict[str, int]:
        with self._lock:
            return {window.name.lower(): len(store) for window, store in self.stores.items()}

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            if not self._stop.is_set():
                return
            # still draining after a timed-out stop()
            self._sweeper.join()
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="ratelimit-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=timeout)
            if self._sweeper.is_alive():
                logger.warning("rate limit sweeper did not stop within %ss", timeout)
            else:
                self._sweeper = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.config.sweep_interval_s):
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("rate limit sweep failed")

    def __enter__(self) -> "FixedWindowLimiter":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
