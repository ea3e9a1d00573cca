from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from lowcode_runtime.logging import get_logger
from lowcode_runtime.storage.common import (
    MutationHook,
    fire_hooks,
    parse_json_column,
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


class PostgresDefinitionStore:
    """Postgres-backed definition store.

    The whole definition is kept as JSONB next to denormalised lookup
    columns; counters live in their own table and are updated with
    additive ``UPDATE`` statements so concurrent invocations commute.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._hooks: List[MutationHook] = []
        self._hooks_lock = threading.Lock()
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS custom_api_endpoint (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    method TEXT NOT NULL,
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    templated BOOLEAN NOT NULL DEFAULT FALSE,
                    definition JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS custom_api_endpoint_lookup
                ON custom_api_endpoint (path, method) WHERE enabled
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS custom_api_endpoint_stats (
                    endpoint_id TEXT PRIMARY KEY
                        REFERENCES custom_api_endpoint(id) ON DELETE CASCADE,
                    call_count BIGINT NOT NULL DEFAULT 0,
                    error_count BIGINT NOT NULL DEFAULT 0,
                    total_latency_ns BIGINT NOT NULL DEFAULT 0,
                    last_invoked_at TIMESTAMPTZ
                )
                """
            )

    @staticmethod
    def _row_to_definition(row: dict) -> EndpointDefinition:
        payload = parse_json_column(row.get("definition")) or {}
        payload.setdefault("id", row["id"])
        payload["updatedAt"] = row.get("updated_at") or payload.get("updatedAt")
        payload["createdAt"] = row.get("created_at") or payload.get("createdAt")
        return EndpointDefinition.from_dict(payload)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get(self, definition_id: str) -> Optional[EndpointDefinition]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM custom_api_endpoint WHERE id = %s", (definition_id,)
            ).fetchone()
        return self._row_to_definition(row) if row else None

    def resolve(
        self, path: str, method: str
    ) -> Optional[Tuple[EndpointDefinition, Dict[str, str]]]:
        path = normalize_path(path)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM custom_api_endpoint
                WHERE enabled AND method = %s AND (path = %s OR templated)
                """,
                (method.upper(), path),
            ).fetchall()
        return resolve_among((self._row_to_definition(r) for r in rows), path, method)

    def definitions_for_path(self, path: str) -> List[EndpointDefinition]:
        path = normalize_path(path)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM custom_api_endpoint WHERE enabled AND (path = %s OR templated)",
                (path,),
            ).fetchall()
        found = []
        for row in rows:
            definition = self._row_to_definition(row)
            if resolve_among([definition], path, definition.method):
                found.append(definition)
        return found

    def list(self, *, enabled_only: bool = False) -> List[EndpointDefinition]:
        query = "SELECT * FROM custom_api_endpoint"
        if enabled_only:
            query += " WHERE enabled"
        query += " ORDER BY path, method, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_definition(r) for r in rows]

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def add_mutation_hook(self, hook: MutationHook) -> None:
        with self._hooks_lock:
            self._hooks.append(hook)

    def upsert(self, definition: EndpointDefinition) -> EndpointDefinition:
        validate_definition(definition)
        payload = definition.to_dict()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO custom_api_endpoint
                        (id, path, method, enabled, templated, definition, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        path = EXCLUDED.path,
                        method = EXCLUDED.method,
                        enabled = EXCLUDED.enabled,
                        templated = EXCLUDED.templated,
                        definition = EXCLUDED.definition,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (
                        definition.id,
                        definition.path,
                        definition.method,
                        definition.enabled,
                        definition.is_templated,
                        Jsonb(payload),
                        definition.created_at,
                        definition.updated_at,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO custom_api_endpoint_stats (endpoint_id)
                    VALUES (%s) ON CONFLICT (endpoint_id) DO NOTHING
                    """,
                    (definition.id,),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "endpoint definition conflicts with an existing row",
                {"id": definition.id},
            ) from exc
        stored = self._row_to_definition(row)
        self.logger.info(
            "definition_upserted",
            definition_id=stored.id,
            path=stored.path,
            method=stored.method,
            enabled=stored.enabled,
        )
        fire_hooks(list(self._hooks), stored.id)
        return stored

    def delete(self, definition_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM custom_api_endpoint WHERE id = %s", (definition_id,)
            ).rowcount
        if not deleted:
            return False
        self.logger.info("definition_deleted", definition_id=definition_id)
        fire_hooks(list(self._hooks), definition_id)
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
        with self._connect() as conn:
            updated = conn.execute(
                """
                UPDATE custom_api_endpoint_stats SET
                    call_count = call_count + 1,
                    error_count = error_count + %s,
                    total_latency_ns = total_latency_ns + %s,
                    last_invoked_at = GREATEST(COALESCE(last_invoked_at, %s), %s)
                WHERE endpoint_id = %s
                """,
                (
                    1 if failed else 0,
                    max(0, int(latency_ns)),
                    at or utcnow(),
                    at or utcnow(),
                    definition_id,
                ),
            ).rowcount
        if not updated:
            raise ConstraintViolation(
                "unknown endpoint definition", {"id": definition_id}
            )

    def get_counters(self, definition_id: str) -> EndpointCounters:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM custom_api_endpoint_stats WHERE endpoint_id = %s",
                (definition_id,),
            ).fetchone()
        if not row:
            return EndpointCounters()
        return EndpointCounters(
            call_count=int(row["call_count"]),
            error_count=int(row["error_count"]),
            total_latency_ns=int(row["total_latency_ns"]),
            last_invoked_at=row.get("last_invoked_at"),
        )

    def close(self) -> None:
        self.pool.close()
