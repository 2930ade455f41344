"""
Module Update Manager - Worker Pool
Bounded fork-join execution shared by scanning, repository queries and installs.
"""

import math
import os
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, Optional
import logging

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def available_parallelism() -> int:
    """Number of CPUs this process may run on."""
    if hasattr(os, "sched_getaffinity"):
        try:
            return max(1, len(os.sched_getaffinity(0)))
        except OSError:
            pass
    return os.cpu_count() or 1


@dataclass
class TaskResult:
    """Outcome of one unit of work run through the pool."""
    key: Hashable
    value: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out


def run_bounded(
    func: Callable[[Any], Any],
    items: Iterable[tuple],
    max_workers: int,
    task_timeout: Optional[float] = None,
    wall_clock_timeout: Optional[float] = None,
    straggler_fraction: float = 0.0,
    label: str = "worker",
) -> dict:
    """
    Run ``func(arg)`` for every ``(key, arg)`` item on a bounded thread pool.

    Waits for the whole batch before returning. A task running longer than
    ``task_timeout`` is recorded as timed out and abandoned; its siblings
    keep running. The batch also closes when no more than
    ``straggler_fraction`` of the tasks remain, or when
    ``wall_clock_timeout`` elapses; whatever is still pending then is
    recorded as timed out.

    Threads cannot be killed, so an abandoned task keeps its thread until
    its own blocking call returns; every blocking call made by a task must
    therefore carry its own timeout.

    Returns:
        Dict mapping each key to its TaskResult.
    """
    items = list(items)
    results: dict = {}
    if not items:
        return results

    started: dict = {}
    started_lock = threading.Lock()

    def _timed(key, arg):
        begin = time.monotonic()
        with started_lock:
            started[key] = begin
        value = func(arg)
        return value, time.monotonic() - begin

    executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix=label)
    futures = {executor.submit(_timed, key, arg): key for key, arg in items}
    pending = set(futures)
    total = len(futures)
    straggler_limit = math.floor(total * straggler_fraction) if straggler_fraction > 0 else 0
    deadline = time.monotonic() + wall_clock_timeout if wall_clock_timeout else None

    def _abandon(future, reason: str) -> None:
        key = futures[future]
        future.cancel()
        with started_lock:
            begin = started.get(key)
        elapsed = time.monotonic() - begin if begin is not None else 0.0
        results[key] = TaskResult(key=key, timed_out=True, duration=elapsed)
        logger.warning(f"{label}: {key} abandoned ({reason})")

    try:
        while pending:
            done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            for future in done:
                key = futures[future]
                if future.cancelled():
                    results[key] = TaskResult(key=key, timed_out=True)
                    continue
                error = future.exception()
                if error is not None:
                    results[key] = TaskResult(key=key, error=error)
                else:
                    value, duration = future.result()
                    results[key] = TaskResult(key=key, value=value, duration=duration)

            now = time.monotonic()
            if task_timeout:
                for future in list(pending):
                    with started_lock:
                        begin = started.get(futures[future])
                    if begin is not None and now - begin > task_timeout:
                        _abandon(future, f"exceeded {task_timeout:g}s")
                        pending.discard(future)

            if deadline is not None and now >= deadline:
                for future in pending:
                    _abandon(future, "wall-clock limit reached")
                pending = set()
            elif straggler_limit and 0 < len(pending) <= straggler_limit:
                for future in pending:
                    _abandon(future, "straggler")
                pending = set()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return results


class ProgressCounter:
    """Thread-safe completion counter with an ETA from recent task durations."""

    def __init__(self, total: int, label: str = "Progress", window: int = 10):
        self.total = total
        self.label = label
        self._done = 0
        self._durations = deque(maxlen=window)
        self._lock = threading.Lock()

    @property
    def done(self) -> int:
        with self._lock:
            return self._done

    def tick(self, item: str, duration: float, workers: int = 1) -> tuple[int, float]:
        """
        Record one finished item.

        Returns:
            (completed count, estimated seconds remaining)
        """
        with self._lock:
            self._done += 1
            self._durations.append(duration)
            done = self._done
            average = sum(self._durations) / len(self._durations)
        remaining = max(0, self.total - done)
        eta = average * math.ceil(remaining / max(1, workers))
        logger.info(f"{self.label} [{done}/{self.total}] {item} ({duration:.1f}s, ETA {eta:.0f}s)")
        return done, eta
