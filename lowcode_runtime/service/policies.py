"""Per-endpoint policy decisions and their in-process state.

The Redis-backed equivalents of :class:`LocalRateLimiter` and
:class:`LocalResponseCache` live in :mod:`lowcode_runtime.storage.redis_cache`
and expose the same coroutine methods.
"""
from __future__ import annotations

import copy
import hashlib
import json
import math
import threading
import time
from collections import deque
from typing import Deque, Dict, Optional, Tuple

from lowcode_runtime.storage.models import EndpointDefinition, InboundRequest

_DEFAULT_CORS_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")
_MAX_LOCAL_CACHE_ENTRIES = 10_000


# ============================================================================
# CORS
# ============================================================================


def origin_allowed(definition: EndpointDefinition, origin: Optional[str]) -> bool:
    policy = definition.cors
    if not policy or not policy.enabled or not origin:
        return True
    allowed = policy.allowed_origins
    return "*" in allowed or origin in allowed


def cors_headers(
    definition: EndpointDefinition, origin: Optional[str], methods: Optional[list] = None
) -> Dict[str, str]:
    policy = definition.cors
    if not policy or not policy.enabled or not origin:
        return {}
    allow_origin = origin if origin in policy.allowed_origins else "*"
    allow_methods = methods or list(policy.allowed_methods) or list(_DEFAULT_CORS_METHODS)
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ", ".join(sorted(set(allow_methods))),
        "Access-Control-Allow-Headers": "Authorization, Content-Type, X-Request-ID",
        "Access-Control-Max-Age": "600",
    }
    if allow_origin != "*":
        headers["Vary"] = "Origin"
    return headers


# ============================================================================
# RATE LIMITING
# ============================================================================


def rate_limit_key(definition: EndpointDefinition, request: InboundRequest) -> str:
    """Limiter key for ``(endpoint, client)``.

    ``identity_or_ip`` keys authenticated callers by identity and everyone
    else by address, so the two populations never share a bucket.
    """
    policy = definition.rate_limit
    keying = policy.keying_policy if policy else "ip"
    identity = request.identity or {}
    identity_id = identity.get("id") if isinstance(identity, dict) else None
    if keying in ("identity", "identity_or_ip") and identity_id is not None:
        client = f"user:{identity_id}"
    elif keying == "identity":
        client = "user:anonymous"
    else:
        client = f"ip:{request.client_ip or 'unknown'}"
    return f"{definition.id}|{client}"


class LocalRateLimiter:
    """Sliding-window log held in process memory.

    Keys whose window has fully elapsed are swept at most once per
    ``sweep_interval`` seconds so idle callers do not accumulate.
    """

    def __init__(self, *, sweep_interval: float = 60.0, clock=time.monotonic) -> None:
        self._hits: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            self._windows[key] = window_seconds
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = max(1, math.ceil(hits[0] + window_seconds - now))
                return False, 0, retry_after
            hits.append(now)
            return True, limit - len(hits), 0

    def _sweep(self, now: float) -> None:
        """Drop keys with no hit inside their window. Caller holds the lock."""
        for key in list(self._hits):
            hits = self._hits[key]
            if not hits or hits[-1] <= now - self._windows.get(key, 0):
                del self._hits[key]
                self._windows.pop(key, None)
        self._last_sweep = now

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._windows.clear()


# ============================================================================
# RESPONSE CACHE
# ============================================================================


def response_cache_key(definition: EndpointDefinition, request: InboundRequest) -> str:
    """Deterministic variance key for a cacheable GET.

    Components: endpoint id and definition version, path parameters, the
    query subset named by ``varyOn`` (all of it when unset) and any
    ``user.<field>`` entries of ``varyOn`` read from the identity.
    """
    policy = definition.response_cache
    vary_on = policy.vary_on if policy else None
    identity = request.identity if isinstance(request.identity, dict) else {}
    if vary_on is None:
        query = dict(request.query)
        user_fields: Dict[str, object] = {}
    else:
        query = {k: request.query.get(k) for k in vary_on if not k.startswith("user.")}
        user_fields = {
            k: identity.get(k[len("user."):]) for k in vary_on if k.startswith("user.")
        }
    material = {
        "endpoint": definition.id,
        "version": definition.version,
        "params": dict(sorted(request.params.items())),
        "query": dict(sorted(query.items())),
        "user": dict(sorted(user_fields.items())),
    }
    encoded = json.dumps(material, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


class LocalResponseCache:
    """TTL map of cached success envelopes keyed per endpoint."""

    def __init__(self, max_entries: int = _MAX_LOCAL_CACHE_ENTRIES) -> None:
        self._entries: Dict[Tuple[str, str], Tuple[float, dict]] = {}
        self._lock = threading.Lock()
        self.max_entries = max_entries

    async def get_response(self, endpoint_id: str, cache_key: str) -> Optional[dict]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get((endpoint_id, cache_key))
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= now:
                self._entries.pop((endpoint_id, cache_key), None)
                return None
            return copy.deepcopy(payload)

    async def set_response(
        self, endpoint_id: str, cache_key: str, payload: dict, ttl_seconds: int
    ) -> None:
        expires_at = time.monotonic() + max(1, int(ttl_seconds))
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._evict_expired()
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                self._entries.pop(oldest, None)
            self._entries[(endpoint_id, cache_key)] = (expires_at, copy.deepcopy(payload))

    async def purge_responses(self, endpoint_id: Optional[str] = None) -> int:
        with self._lock:
            if endpoint_id is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            keys = [k for k in self._entries if k[0] == endpoint_id]
            for key in keys:
                self._entries.pop(key, None)
            return len(keys)

    def _evict_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            self._entries.pop(key, None)
