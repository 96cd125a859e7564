"""Summary: Keyed in-flight table for attachment downloads.

Importance: Guarantees at most one fetch per attachment identity inside a process.
Alternatives: Use one global lock around every download.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class InFlightTable:
    """Summary: Tracks keys that currently have work in progress.

    Importance: Second callers for the same key skip instead of duplicating work.
    Alternatives: Block second callers until the first finishes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: set[Hashable] = set()

    def acquire(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._inflight:
                return False
            self._inflight.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._lock:
            self._inflight.discard(key)

    @contextmanager
    def claim(self, key: Hashable) -> Iterator[bool]:
        """Summary: Claim a key for the duration of a block.

        Importance: Releases the key even when the block raises or is cancelled.
        Alternatives: Pair acquire and release calls by hand.
        """

        acquired = self.acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
