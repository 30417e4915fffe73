"""Bounded LRU cache implementation."""

from collections import OrderedDict
from typing import Dict, Generic, Hashable, Iterator, Mapping, Optional, Tuple, TypeVar

K = TypeVar('K', bound=Hashable)
V = TypeVar('V')


class BoundedCache(Generic[K, V]):
    """Fixed-capacity key/value store with least-recently-used eviction.

    Reads promote a key to most-recently-used. ``None`` is a legitimate
    value (a negative result), so use ``has`` to tell it apart from a miss.
    """

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        # OrderedDict keeps recency order: first item is the eviction candidate
        self._cache: "OrderedDict[K, V]" = OrderedDict()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return the value for key and mark it most recently used."""
        if key not in self._cache:
            return default
        self._cache.move_to_end(key)
        return self._cache[key]

    def set(self, key: K, value: V) -> None:
        """Insert or refresh key, evicting the oldest entry when full."""
        if key in self._cache:
            self._cache.move_to_end(key)
            self._cache[key] = value
            return

        if len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
        self._cache[key] = value

    def has(self, key: K) -> bool:
        """Membership test that does not touch recency."""
        return key in self._cache

    def delete(self, key: K) -> bool:
        if key in self._cache:
            del self._cache[key]
            return True
        return False

    def clear(self) -> None:
        self._cache.clear()

    def keys(self) -> Iterator[K]:
        """Keys from least to most recently used."""
        return iter(list(self._cache.keys()))

    def items(self) -> Iterator[Tuple[K, V]]:
        return iter(list(self._cache.items()))

    def to_dict(self) -> Dict[K, V]:
        return dict(self._cache)

    def load(self, entries: Mapping[K, V]) -> None:
        """Replace contents with entries, in iteration order."""
        self.clear()
        for key, value in entries.items():
            self.set(key, value)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        """Return cache size."""
        return len(self._cache)
