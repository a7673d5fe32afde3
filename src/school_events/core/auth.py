"""
Authentication and Authorization Module

Provides authentication dependencies for FastAPI endpoints.
Every authenticated request resolves to an explicit ``Actor`` (id + role)
which is passed into the service layer; services never read ambient
session state.

SECURITY NOTE:
- Development mode auth bypass is ONLY enabled when PYTHON_ENV=development
- Production environments MUST set PYTHON_ENV=production to disable test tokens
"""

import logging
import os
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from school_events.core.config import settings
from school_events.core.security import decode_token

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI documentation
security = HTTPBearer(
    auto_error=True,
    description="JWT Bearer token for authentication",
)

ROLE_ADMIN = "admin"
ROLE_TEACHER = "teacher"
ROLE_GUARDIAN = "guardian"


@dataclass(frozen=True)
class Actor:
    """
    The authenticated caller of a service operation.

    Populated from JWT claims after token validation.

    Attributes:
        id: Account's unique identifier (UUID)
        role: One of 'admin', 'teacher', 'guardian'
        email: Account email (optional, for logging)
        name: Display name (optional, used in notification copy)
    """

    id: UUID
    role: str
    email: str | None = None
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_teacher(self) -> bool:
        return self.role == ROLE_TEACHER

    @property
    def is_guardian(self) -> bool:
        return self.role == ROLE_GUARDIAN

    def __str__(self) -> str:
        return f"Actor(id={self.id}, role={self.role})"


def _is_dev_mode_safe() -> bool:
    """
    Check if development mode is safe to enable.

    Both the parsed settings and the raw PYTHON_ENV variable must agree
    that this is a development environment.
    """
    env_var = os.getenv("PYTHON_ENV", "").lower()

    is_safe = (
        settings.is_development
        and not settings.is_production
        and env_var not in ("production", "staging")
    )

    if is_safe:
        logger.warning(
            "SECURITY: Development auth mode is ENABLED. This MUST NOT be used in production!"
        )

    return is_safe


_DEVELOPMENT_MODE = _is_dev_mode_safe()

_DEV_ADMIN = Actor(
    id=UUID("00000000-0000-0000-0000-000000000001"),
    role=ROLE_ADMIN,
    email="admin@school-events.dev",
    name="Development Admin",
)


def _unauthorized(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _validate_jwt_token(token: str) -> Actor:
    """
    Validate JWT token and extract the actor.

    Raises:
        HTTPException 401: If token is invalid, expired or not an access token
    """
    if _DEVELOPMENT_MODE and token in ("dev-token", "test-token"):
        logger.debug("Development mode: Using test token")
        return _DEV_ADMIN

    payload = decode_token(token)

    if payload is None:
        logger.warning("Invalid or expired JWT token")
        raise _unauthorized("INVALID_TOKEN", "Invalid or expired authentication token.")

    if payload.get("type", "access") != "access":
        logger.warning(f"Invalid token type: {payload.get('type')}")
        raise _unauthorized("INVALID_TOKEN_TYPE", "This endpoint requires an access token.")

    try:
        subject = payload.get("sub")
        if not subject:
            raise ValueError("Missing 'sub' claim in token")
        role = payload.get("role", "")
        if role not in (ROLE_ADMIN, ROLE_TEACHER, ROLE_GUARDIAN):
            raise ValueError(f"Unknown role claim: {role!r}")

        return Actor(
            id=UUID(subject),
            role=role,
            email=payload.get("email"),
            name=payload.get("name"),
        )
    except ValueError as e:
        logger.warning(f"Invalid token claims: {e}")
        raise _unauthorized(
            "INVALID_TOKEN_CLAIMS", "Token contains invalid or missing claims."
        ) from e


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    FastAPI dependency that validates the bearer token and returns the actor.

    Usage:
        @router.post("/events/{event_id}/registrations")
        async def register(actor: Actor = Depends(get_current_actor)):
            ...
    """
    actor = await _validate_jwt_token(credentials.credentials)
    logger.debug(f"Authenticated {actor}")
    return actor


async def get_current_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    FastAPI dependency requiring the admin role.

    Raises:
        HTTPException 403: If the actor is not an admin
    """
    if not actor.is_admin:
        logger.warning(f"Access denied: {actor} attempted an admin-only action")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "ADMIN_ACCESS_REQUIRED",
                "message": "Admin access is required for this endpoint.",
            },
        )
    return actor


__all__ = [
    "Actor",
    "ROLE_ADMIN",
    "ROLE_GUARDIAN",
    "ROLE_TEACHER",
    "get_current_actor",
    "get_current_admin",
]
