"""JWT issuing and the FastAPI role dependencies."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.websockets import WebSocketDisconnect

from logbook.config import get_settings
from logbook.db.models import Role

logger = structlog.get_logger(__name__)

security = HTTPBearer()

STAFF_ROLES = (Role.INSTRUCTOR.value, Role.ADMIN.value)


def create_access_token(
    user_id: str,
    role: str,
    email: str | None = None,
    *,
    expires_minutes: int | None = None,
) -> str:
    """Create a signed JWT access token for the given user."""
    settings = get_settings()
    minutes = expires_minutes or settings.access_token_expire_minutes
    payload: Dict[str, Any] = {
        "sub": user_id,
        "role": role,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    if email is not None:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """Decode the bearer token into its claims."""
    return decode_token(credentials.credentials)


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role.

    Administrators pass every check so they can perform any lesser action.
    """

    allowed = {Role.ADMIN.value, *roles}

    def checker(
        request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> Dict[str, Any]:
        data = decode_token(credentials.credentials)
        if data.get("role") not in allowed:
            logger.info(
                "access_denied",
                user_id=data.get("sub"),
                role=data.get("role"),
                path=request.url.path,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient privileges",
            )
        return data

    return checker


def is_staff(user: Dict[str, Any]) -> bool:
    return user.get("role") in STAFF_ROLES


async def ws_authenticate(websocket: WebSocket) -> Dict[str, Any]:
    """Authenticate a websocket connection from its header or ``token`` query."""

    def _normalise_token(candidate: Optional[str]) -> Optional[str]:
        if not candidate:
            return None
        value = candidate.strip()
        if value.lower().startswith("bearer "):
            _, _, remainder = value.partition(" ")
            value = remainder.strip()
        return value or None

    token = _normalise_token(websocket.headers.get("Authorization"))
    if not token:
        token = _normalise_token(websocket.query_params.get("token"))
    if not token:
        await websocket.close(code=1008)
        raise WebSocketDisconnect(code=1008)
    try:
        return decode_token(token)
    except HTTPException:
        await websocket.close(code=1008)
        raise WebSocketDisconnect(code=1008)


__all__ = [
    "STAFF_ROLES",
    "create_access_token",
    "decode_token",
    "get_current_user",
    "is_staff",
    "require_roles",
    "security",
    "ws_authenticate",
]
