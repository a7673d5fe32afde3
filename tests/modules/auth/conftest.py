"""
Fixtures for auth tests.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from school_events.core.email import EmailResult
from school_events.modules.users.models import User, UserRole
from school_events.modules.users.repository import FailedLoginState, UserRepository

AUTH_SERVICE = "school_events.modules.auth.service"
CORRECT_PASSWORD = "Correct#123"


class InMemoryAccounts:
    """Account store applying the same rules as the conditional UPDATEs."""

    def __init__(self):
        self.users: dict[str, User] = {}

    def add(self, user: User) -> User:
        self.users[user.email] = user
        return user

    async def get_by_email(self, db, email):
        return self.users.get(email.lower())

    def _by_id(self, user_id):
        return next(u for u in self.users.values() if u.id == user_id)

    async def record_failed_login(self, db, user_id, *, now, max_attempts, lockout):
        user = self._by_id(user_id)
        if user.locked_until is not None and user.locked_until > now:
            return None

        lockout_expired = user.locked_until is not None and user.locked_until <= now
        attempts = 1 if lockout_expired else user.login_attempts + 1
        if attempts >= max_attempts:
            user.locked_until = now + lockout
        elif lockout_expired:
            user.locked_until = None
        user.login_attempts = attempts
        return FailedLoginState(login_attempts=attempts, locked_until=user.locked_until)

    async def record_successful_login(self, db, user_id, *, now):
        user = self._by_id(user_id)
        user.login_attempts = 0
        user.locked_until = None
        user.last_login = now

    async def set_reset_token(self, db, user_id, *, token_hash, expires_at):
        user = self._by_id(user_id)
        user.password_reset_token = token_hash
        user.password_reset_expires = expires_at

    async def consume_reset_token(self, db, *, token_hash, new_password_hash, now):
        for user in self.users.values():
            if (
                user.password_reset_token == token_hash
                and user.password_reset_expires > now
                and user.is_active
            ):
                user.password_hash = new_password_hash
                user.password_reset_token = None
                user.password_reset_expires = None
                user.login_attempts = 0
                user.locked_until = None
                return user.id
        return None

    async def clear_expired_reset_token(self, db, *, token_hash, now):
        cleared = 0
        for user in self.users.values():
            if user.password_reset_token == token_hash and user.password_reset_expires <= now:
                user.password_reset_token = None
                user.password_reset_expires = None
                cleared += 1
        return cleared


@pytest.fixture
def now():
    return datetime(2026, 5, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def accounts():
    store = InMemoryAccounts()
    names = (
        "get_by_email",
        "record_failed_login",
        "record_successful_login",
        "set_reset_token",
        "consume_reset_token",
        "clear_expired_reset_token",
    )
    patches = [patch.object(UserRepository, name, getattr(store, name)) for name in names]
    for p in patches:
        p.start()
    yield store
    for p in patches:
        p.stop()


@pytest.fixture
def account(accounts):
    return accounts.add(
        User(
            id=uuid4(),
            email="parent@test.com",
            password_hash=f"hashed:{CORRECT_PASSWORD}",
            first_name="Grace",
            last_name="Parent",
            role=UserRole.GUARDIAN,
            is_active=True,
            login_attempts=0,
            locked_until=None,
        )
    )


@pytest.fixture
def security_stubs():
    """Cheap password hashing and token creation."""
    with (
        patch(
            f"{AUTH_SERVICE}.verify_password",
            side_effect=lambda secret, password_hash: password_hash == f"hashed:{secret}",
        ),
        patch(f"{AUTH_SERVICE}.hash_password", side_effect=lambda secret: f"hashed:{secret}"),
        patch(f"{AUTH_SERVICE}.create_access_token", return_value="access-token"),
        patch(f"{AUTH_SERVICE}.create_refresh_token", return_value="refresh-token"),
    ):
        yield


@pytest.fixture
def mock_send_email():
    with patch(
        f"{AUTH_SERVICE}.send_email",
        AsyncMock(return_value=EmailResult(success=True, message_id="em_1")),
    ) as mock:
        yield mock
