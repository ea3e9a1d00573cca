from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from lowcode_runtime.logging import get_logger
from lowcode_runtime.storage.common import DefinitionStore
from lowcode_runtime.storage.models import EndpointDefinition, normalize_path

logger = get_logger(__name__)

_MAX_ROUTE_ENTRIES = 4096


@dataclass(frozen=True)
class CacheEntry:
    definition: EndpointDefinition
    loaded_at: float


class DefinitionCache:
    """TTL cache of endpoint snapshots keyed by id.

    A second map caches ``(path, method) -> (id, params)`` resolutions so a
    warm dispatch never reaches the store. Both maps are cleared by the same
    invalidation calls. Concurrent misses may load twice; a load only
    publishes if no invalidation happened while it was in flight.
    """

    def __init__(
        self,
        store: DefinitionStore,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._routes: Dict[Tuple[str, str], Tuple[float, str, Dict[str, str]]] = {}
        self._generations: Dict[str, int] = {}
        self._route_generation = 0
        self._epoch = 0
        self._lock = threading.Lock()

    def _fresh(self, loaded_at: float) -> bool:
        return self._clock() - loaded_at < self.ttl_seconds

    def get(self, definition_id: str) -> Optional[EndpointDefinition]:
        with self._lock:
            entry = self._entries.get(definition_id)
            if entry is not None and self._fresh(entry.loaded_at):
                return entry.definition
            stamp = (self._epoch, self._generations.get(definition_id, 0))

        logger.debug("definition_cache_miss", definition_id=definition_id)
        definition = self.store.get(definition_id)
        if definition is None:
            return None

        with self._lock:
            if (self._epoch, self._generations.get(definition_id, 0)) == stamp:
                self._entries[definition_id] = CacheEntry(definition, self._clock())
        return definition

    def resolve(
        self, path: str, method: str
    ) -> Optional[Tuple[EndpointDefinition, Dict[str, str]]]:
        key = (normalize_path(path), method.upper())
        with self._lock:
            route = self._routes.get(key)
            generation = self._route_generation
        if route is not None and self._fresh(route[0]):
            definition = self.get(route[1])
            if definition is not None and definition.enabled:
                return definition, dict(route[2])

        resolved = self.store.resolve(*key)
        if resolved is None:
            return None
        definition, params = resolved
        with self._lock:
            if self._route_generation == generation:
                if len(self._routes) >= _MAX_ROUTE_ENTRIES:
                    self._routes.clear()
                self._routes[key] = (self._clock(), definition.id, dict(params))
                if definition.id not in self._entries:
                    self._entries[definition.id] = CacheEntry(definition, self._clock())
        return definition, params

    def invalidate(self, definition_id: Optional[str] = None) -> None:
        with self._lock:
            self._route_generation += 1
            self._routes.clear()
            if definition_id is None:
                self._epoch += 1
                self._entries.clear()
            else:
                self._generations[definition_id] = self._generations.get(definition_id, 0) + 1
                self._entries.pop(definition_id, None)
        logger.info("definition_cache_invalidated", definition_id=definition_id or "*")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
