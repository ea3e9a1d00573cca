"""Execution engine: turns one resolved endpoint plus one request into an envelope."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from fastapi.encoders import jsonable_encoder
from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from lowcode_runtime.api.schemas import Envelope
from lowcode_runtime.logging import get_logger, log_invocation, sanitize_error_message
from lowcode_runtime.service.entities import EntityGateway
from lowcode_runtime.service.errors import (
    ConfigurationError,
    EndpointDisabled,
    ErrorKind,
    ExecutionError,
    ExecutionTimeout,
    RequestValidationError,
    ResponseValidationError,
    UpstreamError,
)
from lowcode_runtime.service.expressions import evaluate
from lowcode_runtime.service.outbound import OutboundHttpClient
from lowcode_runtime.service.sandbox import SandboxExecutor
from lowcode_runtime.service.workflow import WorkflowGateway
from lowcode_runtime.storage.models import EndpointDefinition, ExecutionContext, InboundRequest

logger = get_logger(__name__)

Handler = Callable[[EndpointDefinition, InboundRequest, Dict[str, Any], ExecutionContext], Awaitable[Any]]


def _validate_against(schema: Optional[dict], instance: Any) -> Optional[Any]:
    """Return the most relevant validation error, or ``None`` when valid."""
    if not schema:
        return None
    validator = Draft202012Validator(schema)
    return best_match(validator.iter_errors(instance))


def _error_location(error: Any) -> str:
    path = "/".join(str(part) for part in error.absolute_path)
    return f"/{path}" if path else "/"


class ExecutionEngine:
    """Strategy dispatcher over the five handler kinds.

    ``execute`` never raises: every failure is folded into an :class:`Envelope`
    whose ``error.kind`` classifies it.
    """

    def __init__(
        self,
        *,
        sandbox: SandboxExecutor,
        outbound: OutboundHttpClient,
        workflows: WorkflowGateway,
        entities: EntityGateway,
        engine_timeout_ms: int = 60000,
        formula_env: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.sandbox = sandbox
        self.outbound = outbound
        self.workflows = workflows
        self.entities = entities
        self.engine_timeout_ms = engine_timeout_ms
        self.formula_env = dict(formula_env or {})
        self._handlers: Dict[str, Handler] = {
            "formula": self._run_formula,
            "external_http": self._run_external_http,
            "workflow": self._run_workflow,
            "user_code": self._run_user_code,
            "entity_op": self._run_entity_op,
        }

    def deadline_ms(self, definition: EndpointDefinition) -> int:
        if definition.timeout_ms and definition.timeout_ms > 0:
            return min(definition.timeout_ms, self.engine_timeout_ms)
        return self.engine_timeout_ms

    async def execute(
        self,
        definition: EndpointDefinition,
        request: InboundRequest,
        context: Optional[ExecutionContext] = None,
        caller_context: Optional[Mapping[str, Any]] = None,
    ) -> Envelope:
        ctx = context or ExecutionContext(
            endpoint_id=definition.id,
            tenant_id=definition.application_id,
            user=request.identity,
            client_ip=request.client_ip,
            user_agent=request.user_agent,
        )
        started = time.perf_counter_ns()
        try:
            data = await self._execute(definition, request, ctx, caller_context)
            envelope = Envelope.ok(data, execution_id=ctx.execution_id)
        except ExecutionError as exc:
            envelope = Envelope.failure(
                exc.kind,
                exc.message,
                sub_kind=exc.sub_kind,
                details=exc.details,
                execution_id=ctx.execution_id,
            )
        except Exception as exc:
            logger.exception(
                "custom_api_internal_error",
                endpoint_id=definition.id,
                execution_id=ctx.execution_id,
                error_type=type(exc).__name__,
            )
            envelope = Envelope.failure(
                ErrorKind.INTERNAL,
                sanitize_error_message(str(exc) or type(exc).__name__),
                execution_id=ctx.execution_id,
            )
        elapsed_ns = time.perf_counter_ns() - started
        envelope.response_time_millis = round(elapsed_ns / 1_000_000, 3)
        log_invocation(
            definition.id,
            ctx.execution_id,
            success=envelope.success,
            kind=envelope.error.kind.value if envelope.error else None,
            duration_ms=elapsed_ns / 1_000_000,
            logger=logger,
        )
        return envelope

    async def _execute(
        self,
        definition: EndpointDefinition,
        request: InboundRequest,
        ctx: ExecutionContext,
        caller_context: Optional[Mapping[str, Any]],
    ) -> Any:
        if not definition.enabled:
            raise EndpointDisabled(f"endpoint '{definition.id}' is disabled")

        if definition.request_schema:
            if isinstance(request.body, (bytes, bytearray)):
                raise RequestValidationError(
                    "request body must be JSON for this endpoint",
                    details={"contentType": request.content_type},
                )
            error = _validate_against(definition.request_schema, request.body)
            if error is not None:
                raise RequestValidationError(
                    f"request body failed validation: {error.message}",
                    details={"location": _error_location(error), "validator": error.validator},
                )

        handler = self._handlers.get(definition.handler_kind)
        if handler is None:
            raise ConfigurationError(
                f"unknown handler kind '{definition.handler_kind}'",
                details={"handlerKind": definition.handler_kind},
            )

        names = self.build_names(definition, request, ctx, caller_context)
        deadline = self.deadline_ms(definition)
        try:
            result = await asyncio.wait_for(
                handler(definition, request, names, ctx), timeout=deadline / 1000
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "custom_api_deadline_exceeded",
                endpoint_id=definition.id,
                execution_id=ctx.execution_id,
                deadline_ms=deadline,
            )
            raise ExecutionTimeout(
                f"invocation exceeded its {deadline} ms deadline",
                details={"timeoutMillis": deadline},
            ) from exc

        result = jsonable_encoder(result)
        if definition.response_schema:
            error = _validate_against(definition.response_schema, result)
            if error is not None:
                raise ResponseValidationError(
                    f"handler result failed validation: {error.message}",
                    details={"location": _error_location(error), "validator": error.validator},
                )
        return result

    def build_names(
        self,
        definition: EndpointDefinition,
        request: InboundRequest,
        ctx: ExecutionContext,
        caller_context: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Names visible to expressions evaluated for this invocation."""
        env = {
            **self.formula_env,
            "applicationId": definition.application_id,
            "endpointId": definition.id,
            "tenantId": ctx.tenant_id,
            "executionId": ctx.execution_id,
        }
        return {
            "request": request.payload(),
            "user": ctx.user,
            "env": env,
            "now": ctx.timestamp,
            "context": {**ctx.as_dict(), **dict(caller_context or {})},
        }

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def _run_formula(self, definition, request, names, ctx) -> Any:
        expression = definition.handler_config.get("expression")
        if not expression:
            raise ConfigurationError("formula handler requires handlerConfig.expression")
        return evaluate(expression, names)

    async def _run_external_http(self, definition, request, names, ctx) -> Any:
        config = definition.handler_config
        url = config.get("url")
        if not url:
            raise ConfigurationError("external_http handler requires handlerConfig.url")
        method = str(config.get("method") or "GET").upper()
        headers = config.get("headers") or {}
        if not isinstance(headers, dict):
            raise ConfigurationError("handlerConfig.headers must be an object")

        body = request.body
        if config.get("transformRequest"):
            # bytes bodies reach the expression unchanged
            body = evaluate(
                config["transformRequest"],
                {"body": request.body, "query": dict(request.query), "params": dict(request.params)},
            )

        timeout_ms = config.get("timeoutMillis")
        response = await self.outbound.request(
            url,
            method=method,
            headers=headers,
            body=body,
            timeout_ms=int(timeout_ms) if timeout_ms else None,
        )

        transform = config.get("transformResponse")
        if not response.ok and not (transform and config.get("transformErrors")):
            raise UpstreamError(
                f"upstream responded with status {response.status}",
                sub_kind="http_error",
                status=response.status,
            )
        if transform:
            return evaluate(
                transform,
                {"response": response.body, "status": response.status, "headers": response.headers},
            )
        return response.body

    async def _run_workflow(self, definition, request, names, ctx) -> Any:
        return await self.workflows.invoke(
            definition.handler_config,
            request_payload=names["request"],
            names=names,
            context=ctx.as_dict(),
        )

    async def _run_user_code(self, definition, request, names, ctx) -> Any:
        code = definition.handler_config.get("code")
        if not code or not isinstance(code, str):
            raise ConfigurationError("user_code handler requires handlerConfig.code")
        config = self.sandbox.build_config(definition.handler_config)
        return await self.sandbox.run(
            code,
            config,
            request=names["request"],
            context=names["context"],
            endpoint_id=definition.id,
            execution_id=ctx.execution_id,
        )

    async def _run_entity_op(self, definition, request, names, ctx) -> Any:
        return await self.entities.execute(
            definition.handler_config,
            request_payload=names["request"],
            context=ctx.as_dict(),
        )
