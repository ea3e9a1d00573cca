from __future__ import annotations

import copy
import hmac
from typing import Iterable, Mapping, Optional, Protocol

from lowcode_runtime.logging import get_logger

logger = get_logger(__name__)


class TokenValidator(Protocol):
    """Resolves a bearer token to an identity mapping, or ``None``."""

    async def validate(self, token: str) -> Optional[dict]: ...


class StaticTokenValidator:
    """Token table loaded from configuration (``AUTH_STATIC_TOKENS``)."""

    def __init__(self, tokens: Mapping[str, dict]) -> None:
        self._tokens = {str(token): dict(identity) for token, identity in tokens.items()}

    async def validate(self, token: str) -> Optional[dict]:
        for known, identity in self._tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return copy.deepcopy(identity)
        return None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header[7:].strip()
    return token or None


def identity_roles(identity: Optional[Mapping]) -> set[str]:
    if not identity:
        return set()
    roles = identity.get("roles") or []
    if identity.get("role"):
        roles = [*roles, identity["role"]]
    return {str(r) for r in roles}


def missing_permissions(identity: Optional[Mapping], required: Iterable[str]) -> list[str]:
    """Permissions in ``required`` that ``identity`` does not hold.

    An ``admin`` role or a ``*`` permission satisfies everything.
    """
    required = [p for p in required if p]
    if not required:
        return []
    if not identity:
        return list(required)
    if "admin" in identity_roles(identity):
        return []
    held = {str(p) for p in identity.get("permissions") or []}
    if "*" in held:
        return []
    return [p for p in required if p not in held]


class AuthService:
    def __init__(self, validator: TokenValidator) -> None:
        self.validator = validator

    async def authenticate(self, authorization: Optional[str]) -> Optional[dict]:
        token = extract_bearer(authorization)
        if not token:
            return None
        try:
            identity = await self.validator.validate(token)
        except Exception as exc:
            logger.error("token_validation_failed", error_type=type(exc).__name__, error=str(exc))
            return None
        if identity is None:
            logger.info("token_rejected")
        return identity


def is_admin(identity: Optional[Mapping]) -> bool:
    return "admin" in identity_roles(identity)
