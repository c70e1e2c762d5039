"""Thread-safe FIFO handing clusters from the producer to loop closing."""

from __future__ import annotations

import threading
from collections import deque

from .cluster import Cluster


class ClusterQueue:
    """Unbounded FIFO of clusters shared by one producer and one consumer.

    All operations take the same lock. ``try_pop`` never blocks; the
    consumer polls, optionally waiting on ``wait_for_cluster`` instead of
    sleeping a fixed tick.
    """

    def __init__(self) -> None:
        self._items: deque[Cluster] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)

    def push(self, cluster: Cluster) -> None:
        """Append a cluster to the tail."""
        with self._not_empty:
            self._items.append(cluster)
            self._not_empty.notify()

    def try_pop(self) -> Cluster | None:
        """Remove and return the head, or None if the queue is empty."""
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def depth(self) -> int:
        """Number of queued clusters."""
        with self._lock:
            return len(self._items)

    def wait_for_cluster(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the queue to be non-empty.

        Returns:
            True if a cluster is available
        """
        with self._not_empty:
            return self._not_empty.wait_for(lambda: len(self._items) > 0, timeout)

    def __len__(self) -> int:
        return self.depth()
