from __future__ import annotations

import threading
from typing import Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")

Batch = Tuple[T, ...]


class BatchBuffer(Generic[T]):
    """
    Thread-safe accumulator for one kind of captured unit.

    ``add`` seals and returns a batch when the buffer reaches ``max_batch_size``;
    the size check and the storage swap happen under the same lock, so a unit is
    never in two batches and never lost between check and swap.
    """

    def __init__(self, max_batch_size: int) -> None:
        if max_batch_size <= 0:
            raise ValueError(f"max_batch_size must be positive, got {max_batch_size}")
        self._max_batch_size = max_batch_size
        self._lock = threading.Lock()
        self._items: List[T] = []

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def add(self, unit: T) -> Optional[Batch]:
        with self._lock:
            self._items.append(unit)
            if len(self._items) < self._max_batch_size:
                return None
            sealed, self._items = self._items, []
        return tuple(sealed)

    def drain_remainder(self) -> Batch:
        with self._lock:
            sealed, self._items = self._items, []
        return tuple(sealed)
