from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from lowcode_runtime.logging import get_logger
from lowcode_runtime.storage.common import (
    MutationHook,
    fire_hooks,
    resolve_among,
    validate_definition,
)
from lowcode_runtime.storage.errors import ConstraintViolation
from lowcode_runtime.storage.models import (
    EndpointCounters,
    EndpointDefinition,
    normalize_path,
    utcnow,
)


class MemoryDefinitionStore:
    """In-memory definition store with a JSON state file for restarts."""

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        persist: bool = True,
        counter_flush_seconds: float = 1.0,
    ) -> None:
        self.logger = get_logger(__name__)
        self.definitions: Dict[str, EndpointDefinition] = {}
        self.counters: Dict[str, EndpointCounters] = {}
        # (path, method) -> ids; templated paths are scanned separately
        self._index: Dict[Tuple[str, str], Set[str]] = {}
        self._templated: Set[str] = set()
        # RLock for definition data; counters get their own lock so metric
        # writers never contend with configuration readers
        self._data_lock = threading.RLock()
        self._counter_lock = threading.Lock()
        # serialises counter file writes; never held together with _data_lock
        self._flush_lock = threading.Lock()
        self._counters_dirty = False
        self._flush_timer: Optional[threading.Timer] = None
        self.counter_flush_seconds = counter_flush_seconds
        self._hooks: List[MutationHook] = []
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = persist and self.fs_root is not None
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _state_path(self, name: str = "custom_api_state.json") -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / name

    def _counters_path(self) -> Path:
        return self._state_path("custom_api_counters.json")

    @staticmethod
    def _write_json(path: Path, payload: dict) -> None:
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2))
            tmp_path.replace(path)
        except Exception as exc:
            raise RuntimeError(f"failed to persist custom api state: {exc}")

    def _persist_state(self) -> None:
        """Write the definition snapshot. Counters live in their own file."""
        if not self.persist:
            return
        with self._data_lock:
            state = {"definitions": [d.to_dict() for d in self.definitions.values()]}
            self._write_json(self._state_path(), state)

    def _mark_counters_dirty(self) -> None:
        """Schedule a debounced counter flush. Caller holds ``_counter_lock``."""
        if not self.persist:
            return
        self._counters_dirty = True
        if self._flush_timer is not None:
            return
        if self.counter_flush_seconds <= 0:
            return
        timer = threading.Timer(self.counter_flush_seconds, self._flush_from_timer)
        timer.daemon = True
        self._flush_timer = timer
        timer.start()

    def _flush_from_timer(self) -> None:
        try:
            self.flush_counters()
        except RuntimeError as exc:
            self.logger.error("custom_api_counter_flush_failed", error=str(exc))

    def flush_counters(self) -> bool:
        """Write pending counter changes. Returns False when nothing was dirty."""
        if not self.persist:
            return False
        with self._flush_lock:
            with self._counter_lock:
                self._flush_timer = None
                if not self._counters_dirty:
                    return False
                self._counters_dirty = False
                snapshot = {
                    def_id: counters.to_dict()
                    for def_id, counters in self.counters.items()
                }
            self._write_json(self._counters_path(), {"counters": snapshot})
        return True

    def close(self) -> None:
        with self._counter_lock:
            timer, self._flush_timer = self._flush_timer, None
        if timer is not None:
            timer.cancel()
        self.flush_counters()

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("definitions", []):
            self._put(EndpointDefinition.from_dict(raw))
        try:
            counters = json.loads(self._counters_path().read_text()).get("counters") or {}
        except FileNotFoundError:
            counters = {}
        for def_id, raw in counters.items():
            if def_id in self.definitions:
                self.counters[def_id] = EndpointCounters.from_dict(raw)
        self.logger.info(
            "custom_api_state_loaded",
            definitions=len(self.definitions),
            path=str(path),
        )
        return True

    # ------------------------------------------------------------------
    # index maintenance
    # ------------------------------------------------------------------

    def _put(self, definition: EndpointDefinition) -> None:
        self._drop(definition.id)
        self.definitions[definition.id] = definition
        if definition.is_templated:
            self._templated.add(definition.id)
        else:
            key = (definition.path, definition.method)
            self._index.setdefault(key, set()).add(definition.id)

    def _drop(self, definition_id: str) -> Optional[EndpointDefinition]:
        previous = self.definitions.pop(definition_id, None)
        if previous is None:
            return None
        self._templated.discard(definition_id)
        key = (previous.path, previous.method)
        ids = self._index.get(key)
        if ids is not None:
            ids.discard(definition_id)
            if not ids:
                self._index.pop(key, None)
        return previous

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get(self, definition_id: str) -> Optional[EndpointDefinition]:
        with self._data_lock:
            return self.definitions.get(definition_id)

    def resolve(
        self, path: str, method: str
    ) -> Optional[Tuple[EndpointDefinition, Dict[str, str]]]:
        path = normalize_path(path)
        with self._data_lock:
            ids = set(self._index.get((path, method.upper()), ()))
            ids.update(self._templated)
            candidates = [self.definitions[i] for i in ids]
        return resolve_among(candidates, path, method)

    def definitions_for_path(self, path: str) -> List[EndpointDefinition]:
        """Enabled definitions serving ``path`` under any method."""
        path = normalize_path(path)
        with self._data_lock:
            candidates = list(self.definitions.values())
        found = []
        for definition in candidates:
            if not definition.enabled:
                continue
            resolved = resolve_among([definition], path, definition.method)
            if resolved:
                found.append(definition)
        return found

    def list(self, *, enabled_only: bool = False) -> List[EndpointDefinition]:
        with self._data_lock:
            items = list(self.definitions.values())
        if enabled_only:
            items = [d for d in items if d.enabled]
        return sorted(items, key=lambda d: (d.path, d.method, d.id))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def add_mutation_hook(self, hook: MutationHook) -> None:
        self._hooks.append(hook)

    def upsert(self, definition: EndpointDefinition) -> EndpointDefinition:
        validate_definition(definition)
        with self._data_lock:
            existing = self.definitions.get(definition.id)
            if existing is not None:
                definition = replace(definition, created_at=existing.created_at)
            self._put(definition)
        with self._counter_lock:
            self.counters.setdefault(definition.id, EndpointCounters())
            self._mark_counters_dirty()
        self._persist_state()
        self.logger.info(
            "definition_upserted",
            definition_id=definition.id,
            path=definition.path,
            method=definition.method,
            enabled=definition.enabled,
        )
        fire_hooks(self._hooks, definition.id)
        return definition

    def delete(self, definition_id: str) -> bool:
        with self._data_lock:
            removed = self._drop(definition_id)
        if removed is None:
            return False
        with self._counter_lock:
            self.counters.pop(definition_id, None)
            self._mark_counters_dirty()
        self._persist_state()
        self.logger.info("definition_deleted", definition_id=definition_id)
        fire_hooks(self._hooks, definition_id)
        return True

    # ------------------------------------------------------------------
    # counters
    # ------------------------------------------------------------------

    def record_invocation(
        self,
        definition_id: str,
        latency_ns: int,
        failed: bool,
        at: Optional[datetime] = None,
    ) -> None:
        with self._counter_lock:
            counters = self.counters.get(definition_id)
            if counters is None:
                if definition_id not in self.definitions:
                    raise ConstraintViolation(
                        "unknown endpoint definition", {"id": definition_id}
                    )
                counters = self.counters.setdefault(definition_id, EndpointCounters())
            counters.call_count += 1
            if failed:
                counters.error_count += 1
            counters.total_latency_ns += max(0, int(latency_ns))
            counters.last_invoked_at = at or utcnow()
            self._mark_counters_dirty()
        if self.counter_flush_seconds <= 0:
            self.flush_counters()

    def get_counters(self, definition_id: str) -> EndpointCounters:
        with self._counter_lock:
            counters = self.counters.get(definition_id) or EndpointCounters()
            return replace(counters)
