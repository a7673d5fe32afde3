"""Authentication router."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.database import get_db
from school_events.core.rate_limit import client_ip_key, rate_limit
from school_events.modules.auth import service
from school_events.modules.auth.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    ResetPasswordRequest,
    UserResponse,
)
from school_events.modules.shared import ServiceError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter()

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)


@router.post("/login", response_model=LoginResponse)
@rate_limit(limit=10, window_seconds=60, key_func=client_ip_key("auth:login"))
async def login(
    request: Request,
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> LoginResponse:
    """
    Authenticate user and return JWT tokens.

    Raises:
        HTTPException 401: Invalid credentials
        HTTPException 423: Account temporarily locked after repeated failures
    """
    try:
        session = await service.authenticate(db, credentials.email, credentials.password)
    except service.AccountLockedError as e:
        exc = to_http_exception(e)
        raise HTTPException(
            status_code=exc.status_code,
            detail={**exc.detail, "retry_after_seconds": e.retry_after_seconds},
            headers={"Retry-After": str(e.retry_after_seconds)},
        ) from e
    except ServiceError as e:
        raise to_http_exception(e) from e

    user = session.user
    return LoginResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        token_type="bearer",
        user=UserResponse(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role.value,
            is_active=user.is_active,
            last_login=user.last_login,
            created_at=user.created_at,
        ),
    )


@router.post("/forgot-password", response_model=MessageResponse)
@rate_limit(limit=5, window_seconds=3600, key_func=client_ip_key("auth:forgot_password"))
async def forgot_password(
    request: Request,
    data: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """
    Request a password reset link.

    Always returns the same response so the endpoint cannot be used to find
    out which emails have accounts.
    """
    await service.issue_reset_token(db, data.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
@rate_limit(limit=10, window_seconds=3600, key_func=client_ip_key("auth:reset_password"))
async def reset_password(
    request: Request,
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    try:
        await service.consume_reset_token(db, data.token, data.new_password)
    except ServiceError as e:
        raise to_http_exception(e) from e
    return MessageResponse(message="Your password has been reset. You can now log in.")


@router.post("/password-strength", response_model=PasswordStrengthResponse)
async def password_strength(data: PasswordStrengthRequest) -> PasswordStrengthResponse:
    result = service.validate_password_strength(data.password)
    return PasswordStrengthResponse(
        score=result.score,
        strength=result.strength,
        feedback=result.feedback,
        is_valid=result.is_valid,
    )
