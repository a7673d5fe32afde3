"""
Security Guard

Login throttling with account lockout, and single-use password reset tokens.

Lockout policy:
- Every wrong password on an unlocked account increments ``login_attempts``
  in one atomic UPDATE; reaching ``MAX_LOGIN_ATTEMPTS`` sets ``locked_until``.
- A locked account is rejected before the password is checked.
- A successful login or a successful password reset clears the lockout.

Reset tokens are random URL-safe strings. Only their SHA-256 hash is stored,
so a leaked database does not leak usable tokens. Issuing a new token
replaces the previous one.
"""

import hashlib
import html
import logging
import math
import re
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from school_events.core.auth import Actor
from school_events.core.config import settings
from school_events.core.email import render_email_layout, send_email
from school_events.core.security import (
    create_access_token,
    create_refresh_token,
    hash_password,
    verify_password,
)
from school_events.modules.shared import ServiceError
from school_events.modules.users.models import User
from school_events.modules.users.repository import UserRepository

logger = logging.getLogger(__name__)

RESET_TOKEN_BYTES = 32
SPECIAL_CHARACTERS = r"[!@#$%^&*(),.?\":{}|<>]"


# ============================================
# Service Exceptions
# ============================================


class InvalidCredentialsError(ServiceError):
    """Unknown account, inactive account or wrong password."""

    def __init__(self):
        super().__init__(
            message="Invalid email or password.",
            error_code="INVALID_CREDENTIALS",
            status_code=401,
        )


class AccountLockedError(ServiceError):
    """Too many failed attempts; login is suspended until the lockout expires."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        minutes = max(1, math.ceil(retry_after_seconds / 60))
        super().__init__(
            message=f"Account is temporarily locked. Try again in {minutes} minute(s).",
            error_code="ACCOUNT_LOCKED",
            status_code=423,
        )


class TokenInvalidOrExpiredError(ServiceError):
    def __init__(self):
        super().__init__(
            message="This password reset link is invalid or has expired.",
            error_code="TOKEN_INVALID_OR_EXPIRED",
            status_code=400,
        )


class WeakPasswordError(ServiceError):
    def __init__(self, feedback: list[str]):
        self.feedback = feedback
        super().__init__(
            message="Password is too weak. " + " ".join(feedback),
            error_code="WEAK_PASSWORD",
            status_code=400,
        )


# ============================================
# Results
# ============================================


@dataclass
class AuthenticatedSession:
    """A successful login: the account, its actor and issued tokens."""

    user: User
    actor: Actor
    access_token: str
    refresh_token: str


@dataclass
class PasswordStrength:
    score: int
    strength: str
    feedback: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.score >= 3


# ============================================
# Helpers
# ============================================


def _now() -> datetime:
    return datetime.now(UTC)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def validate_password_strength(password: str) -> PasswordStrength:
    """
    Score a password on length, upper/lower case, digits and special characters.

    A score of 3 or more out of 5 is acceptable; 4 or more is strong.
    """
    checks = [
        (len(password) >= 8, "Password should be at least 8 characters long."),
        (re.search(r"[A-Z]", password), "Password should contain an uppercase letter."),
        (re.search(r"[a-z]", password), "Password should contain a lowercase letter."),
        (re.search(r"\d", password), "Password should contain a number."),
        (re.search(SPECIAL_CHARACTERS, password), "Password should contain a special character."),
    ]

    score = sum(1 for passed, _ in checks if passed)
    feedback = [message for passed, message in checks if not passed]

    if score >= 4:
        strength = "strong"
    elif score >= 3:
        strength = "medium"
    else:
        strength = "weak"

    return PasswordStrength(score=score, strength=strength, feedback=feedback)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds()))


def _actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=user.role.value, email=user.email, name=user.full_name)


# ============================================
# Operations
# ============================================


async def authenticate(
    db: AsyncSession,
    identifier: str,
    secret: str,
    now: datetime | None = None,
) -> AuthenticatedSession:
    """
    Authenticate an account by email and password.

    Raises:
        AccountLockedError: Account is locked; the password was not checked
        InvalidCredentialsError: Unknown or inactive account, or wrong password
    """
    now = now or _now()
    user = await UserRepository.get_by_email(db, identifier)

    if user is None or not user.is_active:
        logger.warning("Login attempt for unknown or inactive account")
        raise InvalidCredentialsError()

    if user.is_locked(now):
        logger.warning(f"Login attempt for locked account {user.id}")
        raise AccountLockedError(_seconds_until(user.locked_until, now))

    if not verify_password(secret, user.password_hash):
        state = await UserRepository.record_failed_login(
            db,
            user.id,
            now=now,
            max_attempts=settings.max_login_attempts,
            lockout=timedelta(minutes=settings.lockout_minutes),
        )
        if state is not None and state.locked_until is not None:
            logger.warning(
                f"Account {user.id} locked until {state.locked_until.isoformat()} "
                f"after {state.login_attempts} failed attempts"
            )
        else:
            logger.warning(f"Failed login for account {user.id}")
        raise InvalidCredentialsError()

    await UserRepository.record_successful_login(db, user.id, now=now)

    actor = _actor_for(user)
    access_token = create_access_token(
        subject=str(user.id),
        additional_claims={"email": user.email, "role": actor.role, "name": actor.name},
    )
    refresh_token = create_refresh_token(subject=str(user.id))

    logger.info(f"User logged in: {user.id} (role: {actor.role})")
    return AuthenticatedSession(
        user=user, actor=actor, access_token=access_token, refresh_token=refresh_token
    )


async def issue_reset_token(
    db: AsyncSession,
    identifier: str,
    now: datetime | None = None,
) -> str | None:
    """
    Issue a password reset token and email the reset link.

    Callers must respond identically whether or not the account exists.

    Returns:
        The raw token, or None if no active account matches ``identifier``
    """
    now = now or _now()
    user = await UserRepository.get_by_email(db, identifier)
    if user is None or not user.is_active:
        logger.info("Password reset requested for unknown or inactive account")
        return None

    token = secrets.token_urlsafe(RESET_TOKEN_BYTES)
    expires_at = now + timedelta(minutes=settings.reset_token_expiry_minutes)
    await UserRepository.set_reset_token(
        db, user.id, token_hash=hash_reset_token(token), expires_at=expires_at
    )

    reset_url = f"{settings.frontend_url}/reset-password?token={token}"
    body = f"""
        <p>Dear {html.escape(user.full_name)},</p>
        <p>We received a request to reset your password. The link below is valid for
        {settings.reset_token_expiry_minutes} minutes and can be used once.</p>
        <a href="{html.escape(reset_url)}" class="button">Reset Password</a>
        <p>If you did not request a reset, you can ignore this email.</p>
    """
    result = await send_email(
        user.email, "Reset your password", render_email_layout("Password Reset", body)
    )
    if not result.success:
        logger.error(f"Password reset email for account {user.id} not sent: {result.error}")

    logger.info(f"Password reset token issued for account {user.id}")
    return token


async def consume_reset_token(
    db: AsyncSession,
    token: str,
    new_secret: str,
    now: datetime | None = None,
) -> None:
    """
    Set a new password with a reset token. The token works exactly once and
    also lifts any lockout on the account.

    Raises:
        WeakPasswordError: New password does not meet the strength policy
        TokenInvalidOrExpiredError: Token unknown, already used or expired
    """
    strength = validate_password_strength(new_secret)
    if not strength.is_valid:
        raise WeakPasswordError(strength.feedback)

    now = now or _now()
    token_hash = hash_reset_token(token)
    user_id = await UserRepository.consume_reset_token(
        db,
        token_hash=token_hash,
        new_password_hash=hash_password(new_secret),
        now=now,
    )

    if user_id is None:
        cleared = await UserRepository.clear_expired_reset_token(
            db, token_hash=token_hash, now=now
        )
        if cleared:
            logger.info("Expired password reset token cleared")
        logger.warning("Password reset attempted with an invalid or expired token")
        raise TokenInvalidOrExpiredError()

    logger.info(f"Password reset completed for account {user_id}")
