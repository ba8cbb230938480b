"""
Per-Entity Registry
===================

Explicit owner for stateful per-entity objects (one particle filter or
anomaly detector per asset/topic). Replaces hidden process-wide maps.

Lifecycle:
- get_or_create(key) builds the object on first use
- remove(key) / clear() evict explicitly
- with max_entities set, the least recently used entity is evicted

The registry's map is guarded by a lock; updates to a single entity's
state are not, so callers serialize work per key.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Callable, Generic, Iterator, TypeVar

from quantcore.logging_config import get_context_logger

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EntityRegistry(Generic[T]):
    """Keyed store of stateful objects with create/evict lifecycle."""

    def __init__(
        self,
        factory: Callable[..., T],
        max_entities: int | None = None,
        kind: str = "entity",
    ):
        if max_entities is not None and max_entities < 1:
            raise ValueError(f"max_entities must be at least 1, got {max_entities}")
        self._factory = factory
        self.max_entities = max_entities
        self.kind = kind
        self._entities: OrderedDict[str, T] = OrderedDict()
        self._lock = threading.Lock()

    def get_or_create(self, key: str, **kwargs) -> T:
        """Return the entity's object, creating it with factory(key, **kwargs) if missing."""
        with self._lock:
            if key in self._entities:
                self._entities.move_to_end(key)
                return self._entities[key]

            entity = self._factory(key, **kwargs)
            self._entities[key] = entity
            get_context_logger(__name__, entity=key).info(f"Created {self.kind}")

            if self.max_entities is not None and len(self._entities) > self.max_entities:
                evicted, _ = self._entities.popitem(last=False)
                get_context_logger(__name__, entity=evicted).info(
                    f"Evicted least recently used {self.kind}"
                )
            return entity

    def get(self, key: str) -> T | None:
        with self._lock:
            return self._entities.get(key)

    def remove(self, key: str) -> bool:
        with self._lock:
            removed = self._entities.pop(key, None) is not None
        if removed:
            get_context_logger(__name__, entity=key).info(f"Removed {self.kind}")
        return removed

    def clear(self) -> None:
        with self._lock:
            count = len(self._entities)
            self._entities.clear()
        logger.info(f"Cleared {count} {self.kind} entries")

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entities.keys())

    def items(self) -> list[tuple[str, T]]:
        with self._lock:
            return list(self._entities.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entities

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())
