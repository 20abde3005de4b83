"""Bounded FIFO and append-only containers."""

from __future__ import annotations

from collections import deque
from typing import Generic, Iterator, TypeVar

from .log import ensure

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """A bounded FIFO queue holding at most ``capacity - 1`` items."""

    def __init__(self, capacity: int) -> None:
        ensure(capacity > 1, "ring buffer capacity must exceed one")
        self.capacity = capacity
        self._items: deque[T] = deque()

    def front(self) -> T:
        """The oldest item in the queue."""
        ensure(self._items, "front of empty ring buffer")
        return self._items[0]

    def item(self, index: int) -> T:
        """The item ``index`` places behind the front."""
        ensure(0 <= index < len(self._items), "ring buffer index out of range")
        return self._items[index]

    def pop(self) -> T:
        """Remove and return the oldest item."""
        ensure(self._items, "pop from empty ring buffer")
        return self._items.popleft()

    def push(self, value: T) -> None:
        """Append an item at the back of the queue."""
        ensure(len(self._items) != self.capacity - 1, "ring buffer full")
        self._items.append(value)

    def empty(self) -> bool:
        return not self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)


class StaticBuffer(Generic[T]):
    """An append-only list holding at most ``capacity - 1`` items."""

    def __init__(self, capacity: int) -> None:
        ensure(capacity > 1, "static buffer capacity must exceed one")
        self.capacity = capacity
        self._items: list[T] = []

    def __getitem__(self, index: int) -> T:
        ensure(0 <= index < len(self._items), "static buffer index out of range")
        return self._items[index]

    def append(self, value: T) -> None:
        ensure(len(self._items) != self.capacity - 1, "static buffer full")
        self._items.append(value)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)