"""Entity gateway: declarative CRUD against a domain-entity service."""
from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.errors import (
    ConfigurationError,
    EntityFailure,
    ExecutionError,
    RecordNotFound,
    RequestValidationError,
)
from lowcode_runtime.storage.models import utcnow

logger = get_logger(__name__)

OPERATIONS = ("list", "get", "create", "update", "delete")
_PAGING_KEYS = ("limit", "offset", "sortBy", "sortOrder")
MAX_LIST_LIMIT = 1000


class EntityServiceError(Exception):
    """Raised by entity services for failures other than a missing record."""


class EntityService(Protocol):
    async def list(
        self,
        entity_id: str,
        *,
        filters: Dict[str, Any],
        limit: Optional[int] = None,
        offset: int = 0,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
    ) -> List[dict]: ...

    async def get(self, entity_id: str, record_id: str) -> Optional[dict]: ...

    async def create(self, entity_id: str, data: dict, *, user_id: Optional[str]) -> dict: ...

    async def update(
        self, entity_id: str, record_id: str, data: dict, *, user_id: Optional[str]
    ) -> Optional[dict]: ...

    async def delete(self, entity_id: str, record_id: str, *, user_id: Optional[str]) -> bool: ...


def _sort_key(field_name: str):
    def key(record: dict):
        value = record.get(field_name)
        numeric = isinstance(value, (int, float)) and not isinstance(value, bool)
        return (value is None, not numeric, value if numeric else str(value))

    return key


def _matches(record: dict, filters: Mapping[str, Any]) -> bool:
    for name, expected in filters.items():
        actual = record.get(name)
        if actual != expected and str(actual) != str(expected):
            return False
    return True


class MemoryEntityService:
    """Records per entity kind held in process memory."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def seed(self, entity_id: str, records: List[dict]) -> None:
        with self._lock:
            bucket = self._records.setdefault(entity_id, {})
            for record in records:
                record = copy.deepcopy(record)
                record.setdefault("id", str(uuid.uuid4()))
                bucket[str(record["id"])] = record

    async def list(
        self,
        entity_id: str,
        *,
        filters: Dict[str, Any],
        limit: Optional[int] = None,
        offset: int = 0,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
    ) -> List[dict]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._records.get(entity_id, {}).values()]
        rows = [r for r in rows if _matches(r, filters)]
        if sort_by:
            rows.sort(key=_sort_key(sort_by), reverse=sort_order == "desc")
        end = offset + limit if limit is not None else None
        return rows[offset:end]

    async def get(self, entity_id: str, record_id: str) -> Optional[dict]:
        with self._lock:
            record = self._records.get(entity_id, {}).get(str(record_id))
            return copy.deepcopy(record) if record is not None else None

    async def create(self, entity_id: str, data: dict, *, user_id: Optional[str]) -> dict:
        now = utcnow().isoformat()
        record = {
            **copy.deepcopy(data),
            "id": str(uuid.uuid4()),
            "createdBy": user_id,
            "updatedBy": user_id,
            "createdAt": now,
            "updatedAt": now,
        }
        with self._lock:
            self._records.setdefault(entity_id, {})[record["id"]] = record
        return copy.deepcopy(record)

    async def update(
        self, entity_id: str, record_id: str, data: dict, *, user_id: Optional[str]
    ) -> Optional[dict]:
        with self._lock:
            record = self._records.get(entity_id, {}).get(str(record_id))
            if record is None:
                return None
            changes = {k: v for k, v in data.items() if k not in {"id", "createdBy", "createdAt"}}
            record.update(copy.deepcopy(changes))
            record["updatedBy"] = user_id
            record["updatedAt"] = utcnow().isoformat()
            return copy.deepcopy(record)

    async def delete(self, entity_id: str, record_id: str, *, user_id: Optional[str]) -> bool:
        with self._lock:
            removed = self._records.get(entity_id, {}).pop(str(record_id), None)
        return removed is not None


class HttpEntityService:
    """Entity service reached over REST at ``{base_url}/entities/{entity}/records``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.transport = transport

    def _url(self, entity_id: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/entities/{entity_id}/records"
        return f"{url}/{record_id}" if record_id is not None else url

    async def _send(
        self,
        method: str,
        url: str,
        *,
        user_id: Optional[str] = None,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> httpx.Response:
        headers = {"X-User-Id": user_id} if user_id else {}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s), transport=self.transport
            ) as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=headers
                )
        except httpx.HTTPError as exc:
            raise EntityServiceError(f"entity service unreachable: {exc.__class__.__name__}") from exc
        if response.status_code >= 400 and response.status_code != 404:
            raise EntityServiceError(
                f"entity service returned status {response.status_code}"
            )
        return response

    @staticmethod
    def _payload(response: httpx.Response) -> Any:
        body = response.json() if response.content else None
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def list(
        self,
        entity_id: str,
        *,
        filters: Dict[str, Any],
        limit: Optional[int] = None,
        offset: int = 0,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
    ) -> List[dict]:
        params = {k: str(v) for k, v in filters.items()}
        if limit is not None:
            params["limit"] = str(limit)
        params["offset"] = str(offset)
        if sort_by:
            params["sortBy"] = sort_by
            params["sortOrder"] = sort_order
        response = await self._send("GET", self._url(entity_id), params=params)
        if response.status_code == 404:
            return []
        return self._payload(response) or []

    async def get(self, entity_id: str, record_id: str) -> Optional[dict]:
        response = await self._send("GET", self._url(entity_id, record_id))
        if response.status_code == 404:
            return None
        return self._payload(response)

    async def create(self, entity_id: str, data: dict, *, user_id: Optional[str]) -> dict:
        response = await self._send("POST", self._url(entity_id), user_id=user_id, json=data)
        if response.status_code == 404:
            raise EntityServiceError(f"entity '{entity_id}' does not exist")
        return self._payload(response)

    async def update(
        self, entity_id: str, record_id: str, data: dict, *, user_id: Optional[str]
    ) -> Optional[dict]:
        response = await self._send(
            "PUT", self._url(entity_id, record_id), user_id=user_id, json=data
        )
        if response.status_code == 404:
            return None
        return self._payload(response)

    async def delete(self, entity_id: str, record_id: str, *, user_id: Optional[str]) -> bool:
        response = await self._send("DELETE", self._url(entity_id, record_id), user_id=user_id)
        return response.status_code != 404


def _int_option(name: str, value: Any, *, minimum: int = 0) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise RequestValidationError(
            f"{name} must be an integer", details={"field": name}
        ) from exc
    if number < minimum:
        raise RequestValidationError(
            f"{name} must be >= {minimum}", details={"field": name}
        )
    return number


class EntityGateway:
    def __init__(self, service: EntityService) -> None:
        self.service = service

    async def execute(
        self, handler_config: dict, *, request_payload: Mapping[str, Any], context: dict
    ) -> Any:
        entity_id = handler_config.get("entityId")
        if not entity_id or not isinstance(entity_id, str):
            raise ConfigurationError("entity_op handler requires handlerConfig.entityId")
        operation = handler_config.get("operation") or "list"
        if operation not in OPERATIONS:
            raise ConfigurationError(
                f"unknown entity operation '{operation}'",
                details={"operation": operation},
            )

        params = request_payload.get("params") or {}
        query = request_payload.get("query") or {}
        body = request_payload.get("body")
        user = context.get("user") or {}
        user_id = str(user["id"]) if isinstance(user, dict) and user.get("id") is not None else None

        try:
            if operation == "list":
                return await self._list(entity_id, handler_config, query)
            if operation == "get":
                record_id = params.get("id") or query.get("id")
                record = await self.service.get(entity_id, self._require_id(record_id))
                return self._found(record, entity_id, record_id)
            if operation == "create":
                data = self._require_body(body)
                return await self.service.create(entity_id, data, user_id=user_id)
            if operation == "update":
                data = self._require_body(body)
                record_id = params.get("id") or data.get("id")
                record = await self.service.update(
                    entity_id, self._require_id(record_id), data, user_id=user_id
                )
                return self._found(record, entity_id, record_id)
            record_id = params.get("id") or query.get("id")
            deleted = await self.service.delete(
                entity_id, self._require_id(record_id), user_id=user_id
            )
            if not deleted:
                self._found(None, entity_id, record_id)
            return {"id": str(record_id), "deleted": True}
        except ExecutionError:
            raise
        except Exception as exc:
            logger.error(
                "entity_operation_failed",
                entity_id=entity_id,
                operation=operation,
                error=str(exc),
            )
            raise EntityFailure(
                str(exc) or f"entity {operation} failed",
                details={"entityId": entity_id, "operation": operation},
            ) from exc

    async def _list(self, entity_id: str, handler_config: dict, query: Mapping[str, Any]):
        filters = dict(handler_config.get("filters") or {})
        filters.update({k: v for k, v in query.items() if k not in _PAGING_KEYS})
        limit = _int_option("limit", query.get("limit", handler_config.get("limit")), minimum=1)
        offset = _int_option("offset", query.get("offset", handler_config.get("offset"))) or 0
        sort_by = query.get("sortBy") or handler_config.get("sortBy")
        sort_order = str(query.get("sortOrder") or handler_config.get("sortOrder") or "asc").lower()
        if sort_order not in ("asc", "desc"):
            raise RequestValidationError(
                "sortOrder must be 'asc' or 'desc'", details={"field": "sortOrder"}
            )
        if limit is not None:
            limit = min(limit, MAX_LIST_LIMIT)
        return await self.service.list(
            entity_id,
            filters=filters,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    @staticmethod
    def _require_id(record_id: Any) -> str:
        if record_id is None or record_id == "":
            raise RequestValidationError(
                "record id is required (path parameter or query 'id')",
                details={"field": "id"},
            )
        return str(record_id)

    @staticmethod
    def _require_body(body: Any) -> dict:
        if not isinstance(body, dict):
            raise RequestValidationError("request body must be a JSON object")
        return body

    @staticmethod
    def _found(record: Any, entity_id: str, record_id: Any) -> Any:
        if record is None:
            raise RecordNotFound(
                f"{entity_id} record '{record_id}' not found",
                details={"entityId": entity_id, "id": str(record_id)},
            )
        return record
