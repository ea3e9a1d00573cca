"""Sandboxed execution of ``user_code`` handlers.

Each invocation runs in a fresh ``python -I`` child process with resource
limits applied by :mod:`lowcode_runtime.service.sandbox_worker`. The parent
owns the wall-clock deadline and kills the child when it expires.
"""
from __future__ import annotations

import asyncio
import json
import math
import signal
import sys
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional, Sequence

from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.errors import (
    ConfigurationError,
    ExecutionTimeout,
    UserCodeError,
)

logger = get_logger(__name__)

WORKER_PATH = Path(__file__).with_name("sandbox_worker.py")

_MAX_OUTPUT_BYTES = 4 * 1024 * 1024
_MAX_FILE_SIZE_BYTES = 1024 * 1024

_CONSOLE_LEVELS = {"info": "info", "warning": "warning", "error": "error"}


@dataclass
class SandboxConfig:
    """Limits for one user_code invocation.

    Attributes:
        timeout_ms: Wall-clock deadline; the child is killed when it expires
        max_memory_mb: Address-space cap applied inside the child
        allowed_modules: Extra modules the code may import, beyond the
            built-in bindings
    """

    timeout_ms: int = 10000
    max_memory_mb: int = 256
    allowed_modules: tuple[str, ...] = field(default_factory=tuple)

    @property
    def cpu_seconds(self) -> int:
        return math.ceil(self.timeout_ms / 1000) + 1


def _encode_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


class SandboxExecutor:
    """Runs code strings in an isolated child interpreter."""

    def __init__(
        self,
        *,
        module_allowlist: Sequence[str],
        default_timeout_ms: int = 10000,
        max_memory_mb: int = 256,
        python_executable: Optional[str] = None,
    ) -> None:
        self.module_allowlist = frozenset(module_allowlist)
        self.default_timeout_ms = default_timeout_ms
        self.max_memory_mb = max_memory_mb
        self.python_executable = python_executable or sys.executable

    def build_config(self, handler_config: dict) -> SandboxConfig:
        """Derive limits from a handlerConfig, rejecting unknown modules."""
        modules = handler_config.get("allowedModules") or []
        if isinstance(modules, str) or not all(isinstance(m, str) for m in modules):
            raise ConfigurationError("allowedModules must be a list of module names")
        blocked = sorted(set(modules) - self.module_allowlist)
        if blocked:
            raise ConfigurationError(
                f"modules not permitted in the sandbox: {', '.join(blocked)}",
                details={"modules": blocked},
            )
        timeout_ms = handler_config.get("timeoutMillis") or self.default_timeout_ms
        try:
            timeout_ms = int(timeout_ms)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("timeoutMillis must be an integer") from exc
        if timeout_ms <= 0:
            raise ConfigurationError("timeoutMillis must be positive")
        return SandboxConfig(
            timeout_ms=timeout_ms,
            max_memory_mb=self.max_memory_mb,
            allowed_modules=tuple(modules),
        )

    async def run(
        self,
        code: str,
        config: SandboxConfig,
        *,
        request: dict,
        context: dict,
        endpoint_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> Any:
        job = {
            "code": code,
            "request": request,
            "context": context,
            "allowedModules": list(config.allowed_modules),
            "limits": {
                "memoryMb": config.max_memory_mb,
                "cpuSeconds": config.cpu_seconds,
                "fileSizeBytes": _MAX_FILE_SIZE_BYTES,
            },
        }
        payload = json.dumps(job, default=_encode_default).encode("utf-8")

        proc = await asyncio.create_subprocess_exec(
            self.python_executable,
            "-I",
            str(WORKER_PATH),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        timeout_s = config.timeout_ms / 1000
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(payload), timeout=timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                "sandbox_timeout",
                endpoint_id=endpoint_id,
                execution_id=execution_id,
                timeout_ms=config.timeout_ms,
            )
            raise ExecutionTimeout(
                f"user code exceeded its {config.timeout_ms} ms deadline",
                details={"timeoutMillis": config.timeout_ms},
            )
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        sigxcpu = getattr(signal, "SIGXCPU", None)
        if sigxcpu is not None and proc.returncode == -sigxcpu:
            raise ExecutionTimeout(
                "user code exceeded its CPU allowance",
                details={"timeoutMillis": config.timeout_ms},
            )

        result = self._parse_output(stdout)
        if result is None:
            logger.error(
                "sandbox_crashed",
                endpoint_id=endpoint_id,
                execution_id=execution_id,
                returncode=proc.returncode,
                stderr=stderr[-2000:].decode("utf-8", errors="replace"),
            )
            raise UserCodeError(
                f"user code terminated abnormally (exit status {proc.returncode})"
            )

        self._relay_logs(result.get("logs") or [], endpoint_id, execution_id)
        if result.get("ok"):
            return result.get("value")
        error = result.get("error") or {}
        raise UserCodeError(
            error.get("message") or error.get("type") or "user code failed",
            details={"errorType": error.get("type")},
        )

    @staticmethod
    def _parse_output(stdout: bytes) -> Optional[dict]:
        if not stdout or len(stdout) > _MAX_OUTPUT_BYTES:
            return None
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        if not lines:
            return None
        try:
            parsed = json.loads(lines[-1])
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    @staticmethod
    def _relay_logs(
        entries: list, endpoint_id: Optional[str], execution_id: Optional[str]
    ) -> None:
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            level = _CONSOLE_LEVELS.get(entry.get("level"), "info")
            getattr(logger, level)(
                "sandbox_console",
                endpoint_id=endpoint_id,
                execution_id=execution_id,
                message=entry.get("message"),
            )
