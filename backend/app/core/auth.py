"""Actor resolution dependency for API routes.

Identity and session management live outside this service; every request
arrives with an already-authenticated ``(actor_id, role)`` pair that this
module only parses and checks against the route's allowed roles.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings
from app.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class ActorContext:
    actor_id: str
    role: str
    authenticated: bool


SUPPORTED_ROLES = {"shipper", "carrier", "receiver", "admin"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Role header is required",
        )
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_actor_tokens(raw: str) -> Dict[str, Tuple[str, str]]:
    """Parse `token:actor_id:role` comma-separated values from env."""
    mapping: Dict[str, Tuple[str, str]] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) != 3 or not all(parts):
            logger.warning("Ignoring malformed actor token mapping entry", entry=item)
            continue
        token, actor_id, role = parts
        if role.lower() not in SUPPORTED_ROLES:
            logger.warning("Ignoring actor token with unknown role", actor_id=actor_id, role=role)
            continue
        mapping[token] = (actor_id, role.lower())
    return mapping


def get_actor_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> ActorContext:
    """Resolve the calling actor from a bearer token or trusted headers."""
    settings = get_settings()

    if not settings.auth_enabled:
        actor_id = (x_actor_id or "").strip()
        if not actor_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-Actor-ID header is required",
            )
        return ActorContext(
            actor_id=actor_id,
            role=_normalize_role(x_actor_role),
            authenticated=False,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_actor_tokens(settings.actor_tokens)
    resolved = token_map.get(credentials.credentials.strip())
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    actor_id, role = resolved
    return ActorContext(actor_id=actor_id, role=role, authenticated=True)


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: ActorContext = Depends(get_actor_context)) -> ActorContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
