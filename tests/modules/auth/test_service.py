"""
Unit tests for login throttling and password reset.

These tests cover:
- Account lockout after repeated failures and its expiry
- Locked accounts rejected before the password is checked
- Single-use, expiring reset tokens
- Password strength scoring
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from school_events.modules.auth.service import (
    AccountLockedError,
    InvalidCredentialsError,
    TokenInvalidOrExpiredError,
    WeakPasswordError,
    authenticate,
    consume_reset_token,
    hash_reset_token,
    issue_reset_token,
    validate_password_strength,
)

CORRECT_PASSWORD = "Correct#123"
NEW_PASSWORD = "Brand#New456"


@pytest.mark.usefixtures("security_stubs")
class TestAuthenticate:
    """Tests for authenticate."""

    @pytest.mark.asyncio
    async def test_successful_login(self, mock_db, account, now):
        session = await authenticate(mock_db, "Parent@Test.com", CORRECT_PASSWORD, now=now)

        assert session.user is account
        assert session.actor.id == account.id
        assert session.actor.is_guardian
        assert session.access_token == "access-token"
        assert account.last_login == now

    @pytest.mark.asyncio
    async def test_unknown_account(self, mock_db, accounts, now):
        with pytest.raises(InvalidCredentialsError):
            await authenticate(mock_db, "nobody@test.com", CORRECT_PASSWORD, now=now)

    @pytest.mark.asyncio
    async def test_inactive_account(self, mock_db, account, now):
        account.is_active = False
        with pytest.raises(InvalidCredentialsError):
            await authenticate(mock_db, account.email, CORRECT_PASSWORD, now=now)

    @pytest.mark.asyncio
    async def test_lockout_after_max_failures(self, mock_db, account, now):
        """Five wrong passwords lock the account; the correct one is then refused."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await authenticate(mock_db, account.email, "wrong", now=now)

        assert account.login_attempts == 5
        assert account.locked_until == now + timedelta(minutes=15)

        with pytest.raises(AccountLockedError) as exc_info:
            await authenticate(mock_db, account.email, CORRECT_PASSWORD, now=now)

        assert exc_info.value.status_code == 423
        assert exc_info.value.retry_after_seconds == 15 * 60

    @pytest.mark.asyncio
    async def test_locked_account_password_is_not_checked(self, mock_db, account, now):
        account.locked_until = now + timedelta(minutes=5)

        with patch("school_events.modules.auth.service.verify_password") as mock_verify:
            with pytest.raises(AccountLockedError):
                await authenticate(mock_db, account.email, CORRECT_PASSWORD, now=now)

        mock_verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_lockout_expires(self, mock_db, account, now):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await authenticate(mock_db, account.email, "wrong", now=now)

        later = now + timedelta(minutes=16)
        await authenticate(mock_db, account.email, CORRECT_PASSWORD, now=later)

        assert account.login_attempts == 0
        assert account.locked_until is None

    @pytest.mark.asyncio
    async def test_failure_after_expired_lockout_restarts_count(self, mock_db, account, now):
        account.login_attempts = 5
        account.locked_until = now - timedelta(minutes=1)

        with pytest.raises(InvalidCredentialsError):
            await authenticate(mock_db, account.email, "wrong", now=now)

        assert account.login_attempts == 1
        assert account.locked_until is None

    @pytest.mark.asyncio
    async def test_success_resets_failed_attempts(self, mock_db, account, now):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await authenticate(mock_db, account.email, "wrong", now=now)

        await authenticate(mock_db, account.email, CORRECT_PASSWORD, now=now)
        assert account.login_attempts == 0


@pytest.mark.usefixtures("security_stubs")
class TestPasswordReset:
    """Tests for issue_reset_token and consume_reset_token."""

    @pytest.mark.asyncio
    async def test_token_works_exactly_once(self, mock_db, account, now, mock_send_email):
        token = await issue_reset_token(mock_db, account.email, now=now)

        assert token is not None
        assert account.password_reset_token == hash_reset_token(token)
        mock_send_email.assert_awaited_once()
        assert token in mock_send_email.call_args.args[2]

        await consume_reset_token(mock_db, token, NEW_PASSWORD, now=now + timedelta(minutes=5))
        assert account.password_hash == f"hashed:{NEW_PASSWORD}"
        assert account.password_reset_token is None

        with pytest.raises(TokenInvalidOrExpiredError):
            await consume_reset_token(
                mock_db, token, "Another#789", now=now + timedelta(minutes=6)
            )
        assert account.password_hash == f"hashed:{NEW_PASSWORD}"

    @pytest.mark.asyncio
    async def test_expired_token_is_rejected_and_cleared(
        self, mock_db, account, now, mock_send_email
    ):
        token = await issue_reset_token(mock_db, account.email, now=now)

        with pytest.raises(TokenInvalidOrExpiredError):
            await consume_reset_token(mock_db, token, NEW_PASSWORD, now=now + timedelta(hours=2))

        assert account.password_hash == f"hashed:{CORRECT_PASSWORD}"
        assert account.password_reset_token is None

    @pytest.mark.asyncio
    async def test_new_token_replaces_previous(self, mock_db, account, now, mock_send_email):
        first = await issue_reset_token(mock_db, account.email, now=now)
        second = await issue_reset_token(mock_db, account.email, now=now)

        with pytest.raises(TokenInvalidOrExpiredError):
            await consume_reset_token(mock_db, first, NEW_PASSWORD, now=now)
        await consume_reset_token(mock_db, second, NEW_PASSWORD, now=now)

    @pytest.mark.asyncio
    async def test_reset_lifts_lockout(self, mock_db, account, now, mock_send_email):
        account.login_attempts = 5
        account.locked_until = now + timedelta(minutes=10)

        token = await issue_reset_token(mock_db, account.email, now=now)
        await consume_reset_token(mock_db, token, NEW_PASSWORD, now=now)

        session = await authenticate(mock_db, account.email, NEW_PASSWORD, now=now)
        assert session.user is account

    @pytest.mark.asyncio
    async def test_weak_password_rejected_before_token_use(
        self, mock_db, account, now, mock_send_email
    ):
        token = await issue_reset_token(mock_db, account.email, now=now)

        with pytest.raises(WeakPasswordError) as exc_info:
            await consume_reset_token(mock_db, token, "short", now=now)

        assert exc_info.value.feedback
        assert account.password_reset_token == hash_reset_token(token)

    @pytest.mark.asyncio
    async def test_unknown_email_sends_nothing(self, mock_db, accounts, now, mock_send_email):
        token = await issue_reset_token(mock_db, "nobody@test.com", now=now)

        assert token is None
        mock_send_email.assert_not_called()


class TestValidatePasswordStrength:
    @pytest.mark.parametrize(
        "password,score,strength",
        [
            ("abc", 1, "weak"),
            ("abcdefgh", 2, "weak"),
            ("Abcdefgh", 3, "medium"),
            ("Abcdefg1", 4, "strong"),
            ("Abcdef1!", 5, "strong"),
        ],
    )
    def test_scoring(self, password, score, strength):
        result = validate_password_strength(password)
        assert result.score == score
        assert result.strength == strength
        assert result.is_valid is (score >= 3)
        assert len(result.feedback) == 5 - score
