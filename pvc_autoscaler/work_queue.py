"""Rate limited work queue for resize actions.

Semantics follow the usual controller work queue:

- an item is keyed (by claim identity); adding a key that is already queued
  only refreshes its payload, so the newest decision wins;
- a key handed out by `get` is "processing" until `done` is called; adds made
  meanwhile are parked and queued again by `done`;
- `add_after` re-submits after a delay, `add_rate_limited` does the same with a
  per-key exponential delay that `forget` resets.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Any

from pvc_autoscaler.autoscaler_logger import get_logger

DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 1000.0

logger = get_logger("queue")


def _identity_key(item: Any) -> Hashable:
    return item.identity


class RateLimitingQueue:
    def __init__(
        self,
        name: str = "pvcs",
        key: Callable[[Any], Hashable] = _identity_key,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ):
        self.name = name
        self._key = key
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._cond = threading.Condition()
        self._order: deque[Hashable] = deque()
        self._queued: dict[Hashable, Any] = {}
        self._processing: set[Hashable] = set()
        self._dirty: dict[Hashable, Any] = {}
        self._failures: dict[Hashable, int] = {}
        self._waiting: list[tuple[float, int, Any]] = []
        self._seq = itertools.count()
        self._shutting_down = False

        self._waiter = threading.Thread(
            target=self._wait_loop, name=f"{name}-delayed", daemon=True
        )
        self._waiter.start()

    def _add_locked(self, item: Any) -> None:
        key = self._key(item)
        if key in self._processing:
            self._dirty[key] = item
            return
        if key not in self._queued:
            self._order.append(key)
        self._queued[key] = item
        self._cond.notify_all()

    def add(self, item: Any) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: Any, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = time.monotonic() + delay
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify_all()

    def when(self, item: Any) -> float:
        """Next rate limited delay for the item's key, counting this attempt."""
        key = self._key(item)
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        try:
            return min(self.base_delay * (2**failures), self.max_delay)
        except OverflowError:
            return self.max_delay

    def add_rate_limited(self, item: Any) -> None:
        self.add_after(item, self.when(item))

    def forget(self, item: Any) -> None:
        with self._cond:
            self._failures.pop(self._key(item), None)

    def num_requeues(self, item: Any) -> int:
        with self._cond:
            return self._failures.get(self._key(item), 0)

    def get(self, timeout: float | None = None) -> Any | None:
        """Block until an item is available; None on shutdown or timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._order and not self._shutting_down:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                self._cond.wait(remaining)
            if not self._order:
                return None
            key = self._order.popleft()
            item = self._queued.pop(key)
            self._processing.add(key)
            return item

    def done(self, item: Any) -> None:
        key = self._key(item)
        with self._cond:
            self._processing.discard(key)
            parked = self._dirty.pop(key, None)
            if parked is not None and not self._shutting_down:
                self._add_locked(parked)

    def discard(self, key: Hashable) -> None:
        """Drop everything pending for `key`: queued, parked, delayed and its failure count."""
        with self._cond:
            if self._queued.pop(key, None) is not None:
                self._order.remove(key)
            self._dirty.pop(key, None)
            self._failures.pop(key, None)
            kept = [w for w in self._waiting if self._key(w[2]) != key]
            if len(kept) != len(self._waiting):
                heapq.heapify(kept)
                self._waiting = kept

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()
        self._waiter.join(timeout=1.0)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._order)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._waiting)

    def _wait_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    _, _, item = heapq.heappop(self._waiting)
                    self._add_locked(item)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout)
        logger.debug(f"queue {self.name} delayed loop stopped")
