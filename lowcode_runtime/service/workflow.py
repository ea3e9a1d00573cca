"""Workflow gateway: call-and-wait invocation of workflows by id."""
from __future__ import annotations

import inspect
import threading
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Union

import httpx

from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.errors import ConfigurationError, ExecutionError, WorkflowFailure
from lowcode_runtime.service.expressions import evaluate_mapping

logger = get_logger(__name__)

WorkflowCallable = Callable[[dict, dict], Union[Any, Awaitable[Any]]]


class WorkflowEngineClient(Protocol):
    async def execute(self, workflow_id: str, inputs: Any, context: dict) -> Any: ...


class InProcessWorkflowEngine:
    """Registry of workflows implemented as Python callables."""

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowCallable] = {}
        self._lock = threading.Lock()

    def register(self, workflow_id: str, handler: WorkflowCallable) -> None:
        with self._lock:
            self._workflows[workflow_id] = handler

    def unregister(self, workflow_id: str) -> None:
        with self._lock:
            self._workflows.pop(workflow_id, None)

    async def execute(self, workflow_id: str, inputs: Any, context: dict) -> Any:
        with self._lock:
            handler = self._workflows.get(workflow_id)
        if handler is None:
            raise WorkflowFailure(
                f"workflow '{workflow_id}' is not registered",
                details={"workflowId": workflow_id},
            )
        try:
            result = handler(inputs, context)
            if inspect.isawaitable(result):
                result = await result
        except ExecutionError:
            raise
        except Exception as exc:
            raise WorkflowFailure(
                f"workflow '{workflow_id}' failed: {exc}",
                details={"workflowId": workflow_id},
            ) from exc
        return result


class HttpWorkflowEngine:
    """Remote workflow service reached over HTTP.

    ``POST {base_url}/workflows/{id}/execute`` with ``{"input", "context"}``;
    the service answers when the run completes. A body of the form
    ``{"success": false, "error": ...}`` is treated as a failed run.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 60.0,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self.transport = transport

    async def execute(self, workflow_id: str, inputs: Any, context: dict) -> Any:
        url = f"{self.base_url}/workflows/{workflow_id}/execute"
        headers = {"User-Agent": self.user_agent} if self.user_agent else {}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s), transport=self.transport
            ) as client:
                response = await client.post(
                    url, json={"input": inputs, "context": context}, headers=headers
                )
        except httpx.HTTPError as exc:
            logger.error("workflow_service_unreachable", workflow_id=workflow_id, error=str(exc))
            raise WorkflowFailure(
                f"workflow service unreachable: {exc.__class__.__name__}",
                details={"workflowId": workflow_id},
            ) from exc

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = response.text
        if response.status_code >= 400:
            raise WorkflowFailure(
                f"workflow '{workflow_id}' failed with status {response.status_code}",
                details={"workflowId": workflow_id, "workflowStatus": response.status_code},
            )
        if isinstance(payload, dict):
            if payload.get("success") is False:
                error = payload.get("error")
                message = error.get("message") if isinstance(error, dict) else error
                raise WorkflowFailure(
                    str(message or f"workflow '{workflow_id}' failed"),
                    details={"workflowId": workflow_id},
                )
            for key in ("output", "result", "data"):
                if key in payload:
                    return payload[key]
        return payload


def default_workflow_input(request_payload: Mapping[str, Any]) -> Any:
    """Merge query and body; body keys win when both name the same field."""
    query = dict(request_payload.get("query") or {})
    body = request_payload.get("body")
    if isinstance(body, dict):
        return {**query, **body}
    if body is None:
        return query
    return {**query, "body": body}


class WorkflowGateway:
    def __init__(self, engine: WorkflowEngineClient) -> None:
        self.engine = engine

    async def invoke(
        self,
        handler_config: dict,
        *,
        request_payload: Mapping[str, Any],
        names: Mapping[str, Any],
        context: dict,
    ) -> Any:
        workflow_id = handler_config.get("workflowId")
        if not workflow_id or not isinstance(workflow_id, str):
            raise ConfigurationError("workflow handler requires handlerConfig.workflowId")
        input_mapping = handler_config.get("inputMapping")
        output_mapping = handler_config.get("outputMapping")

        if input_mapping:
            inputs = evaluate_mapping(input_mapping, names)
        else:
            inputs = default_workflow_input(request_payload)

        logger.info("workflow_invoke", workflow_id=workflow_id, endpoint_id=context.get("endpointId"))
        result = await self.engine.execute(workflow_id, inputs, context)

        if output_mapping:
            return evaluate_mapping(output_mapping, {**names, "result": result})
        return result
