from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.errors import ConfigurationError, UpstreamError

logger = get_logger(__name__)

_ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


@dataclass
class OutboundResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class OutboundHttpClient:
    """Issues exactly one HTTP request per call; no retries, no redirects."""

    def __init__(
        self,
        *,
        user_agent: str,
        default_timeout_ms: int = 30000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_agent = user_agent
        self.default_timeout_ms = default_timeout_ms
        # tests inject httpx.MockTransport here
        self.transport = transport

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> OutboundResponse:
        method = (method or "GET").upper()
        if method not in _ALLOWED_METHODS:
            raise ConfigurationError(f"unsupported outbound method '{method}'")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ConfigurationError("external_http url must be an absolute http(s) URL")

        timeout_s = (timeout_ms or self.default_timeout_ms) / 1000
        merged_headers = {str(k): str(v) for k, v in (headers or {}).items()}
        merged_headers["User-Agent"] = self.user_agent

        send_kwargs: Dict[str, Any] = {}
        if body is not None and method not in {"GET", "HEAD"}:
            if isinstance(body, (bytes, str)):
                send_kwargs["content"] = body
            else:
                send_kwargs["json"] = body

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_s),
                transport=self.transport,
                follow_redirects=False,
            ) as client:
                response = await client.request(
                    method, url, headers=merged_headers, **send_kwargs
                )
        except httpx.TimeoutException as exc:
            logger.warning(
                "outbound_http_failed", url=url, method=method, sub_kind="timeout", error=str(exc)
            )
            raise UpstreamError(
                f"upstream request timed out after {int(timeout_s * 1000)} ms",
                sub_kind="timeout",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "outbound_http_failed", url=url, method=method, sub_kind="network", error=str(exc)
            )
            raise UpstreamError(
                f"upstream request failed: {exc.__class__.__name__}",
                sub_kind="network",
            ) from exc

        logger.info(
            "outbound_http_completed",
            url=url,
            method=method,
            status=response.status_code,
        )
        return OutboundResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=_decode_body(response),
        )
