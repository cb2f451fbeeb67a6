"""Bounded LRU map with O(1) touch and O(1) eviction."""

from collections import OrderedDict
from typing import Callable, Generic, Iterator, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class LRUMap(Generic[K, V]):
    """Ordered map that keeps the least-recently-used item first.

    get() and set() mark an item as most recently used. When max_size is
    exceeded the least-recently-used item is dropped and handed to
    `on_evict`. peek() and iteration never change the order.

    Not thread-safe on its own; callers hold their own lock.
    """

    def __init__(
        self,
        max_size: int,
        on_evict: Optional[Callable[[K, V], None]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._on_evict = on_evict
        self._data: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K) -> Optional[V]:
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    def peek(self, key: K) -> Optional[V]:
        return self._data.get(key)

    def set(self, key: K, value: V) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            old_key, old_value = self._data.popitem(last=False)
            if self._on_evict is not None:
                self._on_evict(old_key, old_value)

    def touch(self, key: K) -> bool:
        if key not in self._data:
            return False
        self._data.move_to_end(key)
        return True

    def delete(self, key: K) -> bool:
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._data.clear()

    def values(self) -> list[V]:
        return list(self._data.values())

    def items(self) -> list[tuple[K, V]]:
        return list(self._data.items())

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._data))
