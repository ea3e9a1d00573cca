"""Common storage utilities shared between memory and postgres implementations.

Endpoint resolution lives here so that both backends pick the same live
definition for a given ``(path, method)``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from lowcode_runtime.logging import get_logger
from lowcode_runtime.storage.errors import ConstraintViolation
from lowcode_runtime.storage.models import (
    HTTP_METHODS,
    EndpointCounters,
    EndpointDefinition,
)

logger = get_logger(__name__)

MutationHook = Callable[[str], None]

_PARAM_SEGMENT = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)\}$")


class DefinitionStore(Protocol):
    """Read-through accessor for endpoint definitions plus counter sink."""

    def get(self, definition_id: str) -> Optional[EndpointDefinition]: ...

    def resolve(
        self, path: str, method: str
    ) -> Optional[Tuple[EndpointDefinition, Dict[str, str]]]: ...

    def definitions_for_path(self, path: str) -> List[EndpointDefinition]: ...

    def list(self, *, enabled_only: bool = False) -> List[EndpointDefinition]: ...

    def upsert(self, definition: EndpointDefinition) -> EndpointDefinition: ...

    def delete(self, definition_id: str) -> bool: ...

    def record_invocation(
        self, definition_id: str, latency_ns: int, failed: bool, at: Any
    ) -> None: ...

    def get_counters(self, definition_id: str) -> EndpointCounters: ...

    def add_mutation_hook(self, hook: MutationHook) -> None: ...


# ============================================================================
# LIVE SELECTION
# ============================================================================


def live_sort_key(definition: EndpointDefinition) -> Tuple[Any, str]:
    """Last writer wins; ties on updated_at fall back to the id."""
    return (definition.updated_at, definition.id)


def select_live(candidates: Iterable[EndpointDefinition]) -> Optional[EndpointDefinition]:
    enabled = [d for d in candidates if d.enabled]
    if not enabled:
        return None
    return max(enabled, key=live_sort_key)


def match_template(template: str, path: str) -> Optional[Dict[str, str]]:
    """Match ``/orders/{id}`` style templates segment by segment."""
    template_parts = template.strip("/").split("/")
    path_parts = path.strip("/").split("/")
    if len(template_parts) != len(path_parts):
        return None
    params: Dict[str, str] = {}
    for expected, actual in zip(template_parts, path_parts):
        match = _PARAM_SEGMENT.match(expected)
        if match:
            if not actual:
                return None
            params[match.group(1)] = actual
        elif expected != actual:
            return None
    return params


def resolve_among(
    candidates: Iterable[EndpointDefinition], path: str, method: str
) -> Optional[Tuple[EndpointDefinition, Dict[str, str]]]:
    """Pick the single live definition for a request.

    Exact paths always win over templates. Among templates the one with the
    fewest parameters is preferred, then the last writer.
    """
    method = method.upper()
    exact: List[EndpointDefinition] = []
    templated: List[Tuple[EndpointDefinition, Dict[str, str]]] = []
    for definition in candidates:
        if not definition.enabled or definition.method != method:
            continue
        if definition.path == path:
            exact.append(definition)
        elif definition.is_templated:
            params = match_template(definition.path, path)
            if params is not None:
                templated.append((definition, params))
    winner = select_live(exact)
    if winner:
        return winner, {}
    if not templated:
        return None
    definition, params = max(
        templated, key=lambda item: (-len(item[1]), live_sort_key(item[0]))
    )
    return definition, params


# ============================================================================
# VALIDATION
# ============================================================================


def validate_definition(definition: EndpointDefinition) -> None:
    """Reject definitions the dispatcher could never serve."""
    if not definition.path.startswith("/"):
        raise ConstraintViolation("path must be absolute", {"path": definition.path})
    if definition.method not in HTTP_METHODS:
        raise ConstraintViolation(
            "unsupported HTTP method", {"method": definition.method}
        )
    if definition.timeout_ms is not None and definition.timeout_ms <= 0:
        raise ConstraintViolation("timeoutMillis must be positive")
    limit = definition.rate_limit
    if limit and limit.enabled and (limit.max_requests <= 0 or limit.window_seconds <= 0):
        raise ConstraintViolation(
            "rateLimit requires positive windowSeconds and maxRequests",
            limit.to_dict(),
        )


def fire_hooks(hooks: Iterable[MutationHook], definition_id: str) -> None:
    for hook in hooks:
        try:
            hook(definition_id)
        except Exception as exc:
            logger.error(
                "definition_mutation_hook_failed",
                definition_id=definition_id,
                error=str(exc),
            )


def parse_json_column(raw: Any) -> Any:
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
