"""
User Repository

Database operations for accounts.

Throttling and reset-token updates are single conditional UPDATE statements
so that concurrent requests against the same account are serialized by the
database row lock rather than by application code.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import Update, and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from school_events.modules.users.models import User


@dataclass
class FailedLoginState:
    """Account throttling state after a failed attempt was recorded."""

    login_attempts: int
    locked_until: datetime | None


def failed_login_statement(
    user_id: UUID,
    *,
    now: datetime,
    max_attempts: int,
    lockout: timedelta,
) -> Update:
    """
    Build the atomic failed-attempt increment.

    An expired lockout restarts the count at 1. Reaching ``max_attempts``
    sets ``locked_until``. Rows that are currently locked are not matched.
    """
    lockout_expired = and_(User.locked_until.is_not(None), User.locked_until <= now)
    next_attempts = case((lockout_expired, 1), else_=User.login_attempts + 1)

    return (
        update(User)
        .where(
            User.id == user_id,
            or_(User.locked_until.is_(None), User.locked_until <= now),
        )
        .values(
            login_attempts=next_attempts,
            locked_until=case(
                (next_attempts >= max_attempts, now + lockout),
                (lockout_expired, None),
                else_=User.locked_until,
            ),
        )
        .returning(User.login_attempts, User.locked_until)
    )


def consume_reset_token_statement(
    token_hash: str,
    new_password_hash: str,
    *,
    now: datetime,
) -> Update:
    """
    Build the single-use reset token consumption.

    Replaces the password, clears the token and lifts any lockout in the same
    statement that matches the unexpired token.
    """
    return (
        update(User)
        .where(
            User.password_reset_token == token_hash,
            User.password_reset_expires > now,
            User.is_active.is_(True),
        )
        .values(
            password_hash=new_password_hash,
            password_reset_token=None,
            password_reset_expires=None,
            login_attempts=0,
            locked_until=None,
        )
        .returning(User.id)
    )


class UserRepository:
    """Repository for user database operations."""

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        """Get a user by email address (case-insensitive)."""
        result = await db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    @staticmethod
    async def record_failed_login(
        db: AsyncSession,
        user_id: UUID,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> FailedLoginState | None:
        """
        Atomically count a failed login and lock the account at the threshold.

        Returns:
            The new throttling state, or None if the account was locked
            (by a concurrent attempt) before this one was counted
        """
        statement = failed_login_statement(
            user_id, now=now, max_attempts=max_attempts, lockout=lockout
        )
        result = await db.execute(statement)
        row = result.one_or_none()
        await db.commit()

        if row is None:
            return None
        return FailedLoginState(login_attempts=row.login_attempts, locked_until=row.locked_until)

    @staticmethod
    async def record_successful_login(db: AsyncSession, user_id: UUID, *, now: datetime) -> None:
        """Reset throttling state and record the login time."""
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(login_attempts=0, locked_until=None, last_login=now)
        )
        await db.commit()

    @staticmethod
    async def set_reset_token(
        db: AsyncSession,
        user_id: UUID,
        *,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        """Store a reset token hash, replacing any previous token."""
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(password_reset_token=token_hash, password_reset_expires=expires_at)
        )
        await db.commit()

    @staticmethod
    async def consume_reset_token(
        db: AsyncSession,
        *,
        token_hash: str,
        new_password_hash: str,
        now: datetime,
    ) -> UUID | None:
        """
        Use a reset token exactly once.

        Returns:
            The account id, or None if no active account holds this
            unexpired token
        """
        result = await db.execute(
            consume_reset_token_statement(token_hash, new_password_hash, now=now)
        )
        user_id = result.scalar_one_or_none()
        await db.commit()
        return user_id

    @staticmethod
    async def clear_expired_reset_token(db: AsyncSession, *, token_hash: str, now: datetime) -> int:
        """Clear a reset token that matched but has expired."""
        result = await db.execute(
            update(User)
            .where(User.password_reset_token == token_hash, User.password_reset_expires <= now)
            .values(password_reset_token=None, password_reset_expires=None)
        )
        await db.commit()
        return result.rowcount
