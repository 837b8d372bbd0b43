#!/usr/bin/env python3
"""
Work queue of feed URLs with per-item randomized exponential backoff.

Items live either in the ready sequence (FIFO) or in the backoff index, keyed
by the epoch-millisecond instant at which they become ready again. The index
is kept as a heap so that checking the earliest due item is cheap.
"""

import heapq
import random
import threading
from collections import deque
from time import time
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from config import get_logger

logger = get_logger("backoff_queue")

BACKOFF_TIME_MS = 5 * 1000
BACKOFF_POW = 1.05
BACKOFF_TIME_MAX_MS = 24 * 60 * 60 * 1000

# Random multiplier applied to the base backoff time
JITTER_MIN = 0.5
JITTER_MAX = 1.1


def _now_ms() -> int:
    return int(time() * 1000)


class QueueWithBackoff:
    """FIFO queue where failing items can be deferred with growing delays."""

    def __init__(
        self,
        backoff_time_ms: float = BACKOFF_TIME_MS,
        backoff_pow: float = BACKOFF_POW,
        backoff_time_max_ms: float = BACKOFF_TIME_MAX_MS,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize the queue.

        Args:
            backoff_time_ms: Base backoff time in milliseconds.
            backoff_pow: Exponent applied to the previous backoff duration.
            backoff_time_max_ms: Upper bound for any single backoff.
            rng: Random source, seedable for deterministic tests.
            clock: Callable returning the current epoch time in milliseconds.
        """
        self.backoff_time_ms = backoff_time_ms
        self.backoff_pow = backoff_pow
        self.backoff_time_max_ms = backoff_time_max_ms
        self._rng = rng or random.Random()
        self._clock = clock or _now_ms
        self._queue: Deque[str] = deque()
        self._backoff: List[Tuple[int, str]] = []
        self._backoff_times: Set[int] = set()
        self._last_backoff: Dict[str, int] = {}
        self._lock = threading.Lock()

    def push(self, item: str) -> None:
        """Append an item to the ready queue, clearing its backoff history."""
        with self._lock:
            self._last_backoff.pop(item, None)
            self._queue.append(item)

    def pop(self) -> Optional[str]:
        """Return the next ready item, or None if nothing is ready.

        The earliest deferred item is promoted to the back of the ready queue
        first if its due time has passed.
        """
        with self._lock:
            # Items are deferred far less often than popped, so one check per pop is enough
            if self._backoff and self._backoff[0][0] <= self._clock():
                due, item = heapq.heappop(self._backoff)
                self._backoff_times.discard(due)
                self._queue.append(item)
            if not self._queue:
                return None
            return self._queue.popleft()

    def backoff(self, item: str) -> int:
        """Defer an item and return the backoff duration applied, in milliseconds."""
        with self._lock:
            last_backoff = self._last_backoff.get(item, 0)
            jitter = self._rng.uniform(JITTER_MIN, JITTER_MAX)
            duration = int(min(
                self.backoff_time_max_ms,
                jitter * self.backoff_time_ms + last_backoff ** self.backoff_pow,
            ))
            self._last_backoff[item] = duration

            due = self._clock() + duration
            # Never let two items share a due time
            while due in self._backoff_times:
                due += self._rng.randint(1, 3)
            self._backoff_times.add(due)
            heapq.heappush(self._backoff, (due, item))
            logger.debug("Backing off %s for %dms", item, duration)
            return duration

    def remove(self, item: str) -> bool:
        """Remove every pending occurrence of an item. Returns True if any was found."""
        with self._lock:
            found = False
            if item in self._queue:
                self._queue = deque(i for i in self._queue if i != item)
                found = True
            remaining = [(due, i) for due, i in self._backoff if i != item]
            if len(remaining) != len(self._backoff):
                self._backoff = remaining
                heapq.heapify(self._backoff)
                self._backoff_times = {due for due, _ in self._backoff}
                found = True
            self._last_backoff.pop(item, None)
            return found

    def length(self) -> int:
        """Number of items ready to be popped (deferred items are not counted)."""
        with self._lock:
            return len(self._queue)

    def __len__(self) -> int:
        return self.length()

    def __contains__(self, item: str) -> bool:
        with self._lock:
            return item in self._queue or any(i == item for _, i in self._backoff)

    def populate(self, items: Iterable[str]) -> None:
        """Replace the ready queue with the given items in random order."""
        values = list(items)
        self._rng.shuffle(values)
        with self._lock:
            self._queue = deque(values)

    def shuffle(self) -> None:
        """Randomize the order of the ready queue."""
        with self._lock:
            values = list(self._queue)
            self._rng.shuffle(values)
            self._queue = deque(values)

    def last_backoff(self, item: str) -> int:
        """The most recent backoff applied to an item (0 if none since its last push)."""
        with self._lock:
            return self._last_backoff.get(item, 0)

    def is_deferred(self, item: str) -> bool:
        with self._lock:
            return any(i == item for _, i in self._backoff)

    def deferred_count(self) -> int:
        """Number of items currently waiting out a backoff."""
        with self._lock:
            return len(self._backoff)

    def next_due_ms(self) -> Optional[int]:
        """Epoch milliseconds at which the earliest deferred item becomes ready."""
        with self._lock:
            return self._backoff[0][0] if self._backoff else None
