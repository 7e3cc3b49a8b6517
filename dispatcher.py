import logging
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Generic, Hashable, Iterable, Optional, TypeVar

from config import get_settings
from schemas import DispatchSummary


logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")


@dataclass(frozen=True)
class SlidingWindowLimit:
    max_events: int
    window_seconds: float


class PerUserRateLimiter:
    """Sliding-window quota keyed by user."""

    def __init__(
        self,
        limit: SlidingWindowLimit,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit.max_events <= 0:
            raise ValueError("Rate limit must allow at least one event")
        self.limit = limit
        self._clock = clock
        self._events: dict[Hashable, Deque[float]] = {}
        self._lock = Lock()

    def try_acquire(self, key: Hashable) -> tuple[bool, float]:
        """Take a slot for ``key`` if one is free; otherwise report the wait."""
        now = self._clock()
        with self._lock:
            events = self._events.setdefault(key, deque())
            self._trim(events, now)
            if len(events) >= self.limit.max_events:
                return False, self._retry_after(events, now)
            events.append(now)
            return True, 0.0

    def snapshot(self) -> dict[Hashable, int]:
        now = self._clock()
        with self._lock:
            out: dict[Hashable, int] = {}
            for key, events in self._events.items():
                self._trim(events, now)
                out[key] = len(events)
            return out

    def _trim(self, events: Deque[float], now: float) -> None:
        cutoff = now - self.limit.window_seconds
        while events and events[0] <= cutoff:
            events.popleft()

    def _retry_after(self, events: Deque[float], now: float) -> float:
        if not events:
            return 0.0
        return max(0.05, events[0] + self.limit.window_seconds - now)


class ThrottledDispatcher(Generic[ItemT]):
    """Runs one unit of work per item on a bounded thread pool.

    Admission happens on the dispatching thread: an item is submitted only
    once the per-user limiter grants it a slot, and throttled items wait in a
    backlog until their slot frees, so pool workers only ever run admitted
    units. Exceptions are logged and counted per unit. A unit whose handler is
    still running after ``unit_timeout`` seconds is abandoned; its thread is
    not interrupted but the batch no longer waits for it.

    ``clock`` must be the same clock the limiter uses.
    """

    def __init__(
        self,
        *,
        limiter: Optional[PerUserRateLimiter] = None,
        max_workers: Optional[int] = None,
        unit_timeout: Optional[float] = None,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.limiter = limiter or PerUserRateLimiter(
            SlidingWindowLimit(
                max_events=settings.throttle_limit,
                window_seconds=settings.throttle_window_secs,
            ),
            clock=clock,
        )
        self.max_workers = max_workers or settings.dispatch_workers
        self.unit_timeout = (
            unit_timeout if unit_timeout is not None else settings.unit_timeout_secs
        )
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def dispatch(
        self,
        items: Iterable[ItemT],
        handler: Callable[[ItemT], object],
        *,
        key: Callable[[ItemT], Hashable],
    ) -> DispatchSummary:
        units = list(items)
        summary = DispatchSummary(total=len(units))
        if not units:
            return summary

        backlog: list[int] = list(range(len(units)))
        not_before: dict[int, float] = {}
        started: dict[int, float] = {}
        started_lock = Lock()
        futures: dict[Future, int] = {}
        pending: set[Future] = set()
        pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="dispatch"
        )
        try:
            while backlog or pending:
                now = self._clock()
                admitted: set[int] = set()
                for index in backlog:
                    if len(pending) >= self.max_workers:
                        break
                    if not_before.get(index, now) > now:
                        continue
                    allowed, retry_after = self.limiter.try_acquire(key(units[index]))
                    if not allowed:
                        if index not in not_before:
                            logger.info(
                                f"dispatch_throttled: index={index} key={key(units[index])} "
                                f"retry_after_secs={retry_after:.2f}"
                            )
                        not_before[index] = now + retry_after
                        continue
                    admitted.add(index)
                    future = pool.submit(
                        self._run_unit, index, units[index], handler, started, started_lock
                    )
                    futures[future] = index
                    pending.add(future)
                if admitted:
                    backlog = [index for index in backlog if index not in admitted]

                delay = self._admission_delay(backlog, not_before, now)
                if not pending:
                    # Everything left is throttled; nothing to watch until a slot frees.
                    self._sleep(delay if delay is not None else self.poll_interval)
                    continue

                timeout = self.poll_interval if delay is None else min(self.poll_interval, delay)
                done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    index = futures[future]
                    exc = future.exception()
                    if exc is None:
                        summary.succeeded += 1
                    else:
                        summary.failed += 1
                        logger.error(
                            f"dispatch_unit_failed: index={index} item={units[index]!r} "
                            f"error={exc!r}",
                            exc_info=exc,
                        )
                for future in self._expired(pending, futures, started, started_lock):
                    pending.discard(future)
                    summary.timed_out += 1
                    index = futures[future]
                    logger.warning(
                        f"dispatch_unit_timeout: index={index} item={units[index]!r} "
                        f"timeout_secs={self.unit_timeout}"
                    )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        logger.info(
            f"dispatch_done: total={summary.total} succeeded={summary.succeeded} "
            f"failed={summary.failed} timed_out={summary.timed_out}"
        )
        return summary

    @staticmethod
    def _admission_delay(
        backlog: list[int], not_before: dict[int, float], now: float
    ) -> Optional[float]:
        waits = [
            not_before[index] - now
            for index in backlog
            if not_before.get(index, now) > now
        ]
        return min(waits) if waits else None

    def _run_unit(
        self,
        index: int,
        unit: ItemT,
        handler: Callable[[ItemT], object],
        started: dict[int, float],
        started_lock: Lock,
    ) -> object:
        with started_lock:
            started[index] = self._clock()
        return handler(unit)

    def _expired(
        self,
        pending: set[Future],
        futures: dict[Future, int],
        started: dict[int, float],
        started_lock: Lock,
    ) -> list[Future]:
        if self.unit_timeout <= 0:
            return []
        now = self._clock()
        with started_lock:
            snapshot = dict(started)
        expired = []
        for future in pending:
            began = snapshot.get(futures[future])
            if began is not None and now - began > self.unit_timeout:
                expired.append(future)
        return expired
