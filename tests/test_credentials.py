"""Tests for password verification, lockout and self-service unlock."""
from datetime import timedelta

import pytest

from conftest import TEST_PASSWORD, outbox_tags, outbox_token
from trustcore.service.credentials import (
    ALREADY_USED_MESSAGE,
    INVALID_CREDENTIALS_MESSAGE,
    NOT_LOCKED_MESSAGE,
    UNLOCK_REQUEST_MESSAGE,
    PasswordPolicy,
)
from trustcore.service.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from trustcore.storage.models import TokenKind, _now


async def _fail(runtime, email, ctx, times):
    for _ in range(times):
        with pytest.raises((AuthenticationError, AccountLockedError)):
            await runtime.credentials.verify(email, "wrong-password-1", ctx)


class TestPasswordPolicy:
    def test_accepts_letters_and_digits(self):
        assert PasswordPolicy().problems("abcdefg1") == []

    def test_reports_each_problem(self):
        problems = PasswordPolicy().problems("short")
        assert "Password must be at least 8 characters" in problems
        assert "Password must contain a number" in problems

    def test_enforce_names_field(self):
        with pytest.raises(ValidationError) as excinfo:
            PasswordPolicy().enforce("onlyletters", field="new_password")
        assert "new_password" in excinfo.value.detail["fields"]


class TestHashing:
    def test_hash_is_argon2id(self, runtime, make_user):
        user = make_user()
        stored, algo = runtime.store.get_password_record(user.id)
        assert algo == "argon2id"
        assert stored.startswith("$argon2id$")
        assert TEST_PASSWORD not in stored

    def test_check_password(self, runtime, make_user):
        user = make_user()
        assert runtime.credentials.check_password(user.id, TEST_PASSWORD)
        assert not runtime.credentials.check_password(user.id, "Different123")

    def test_missing_record_is_false(self, runtime):
        user = runtime.store.create_user("nopass@example.com")
        assert runtime.credentials.check_password(user.id, TEST_PASSWORD) is False


class TestPasswordHistory:
    def test_set_password_keeps_superseded_hashes(self, runtime, make_user):
        user = make_user()
        first, _ = runtime.store.get_password_record(user.id)
        for password in ("Second123!", "Third123!", "Fourth123!", "Fifth123!"):
            runtime.credentials.set_password(user.id, password)

        history = runtime.store.list_password_history(user.id, 10)
        assert len(history) == 3
        assert first not in history
        assert history[0].startswith("$argon2id$")

    def test_last_three_passwords_refused(self, runtime, make_user):
        user = make_user()
        runtime.credentials.set_password(user.id, "Second123!")
        runtime.credentials.set_password(user.id, "Third123!")

        for reused in ("Third123!", "Second123!", TEST_PASSWORD):
            with pytest.raises(ValidationError) as excinfo:
                runtime.credentials.assert_not_reused(user.id, reused, field="new_password")
            assert excinfo.value.message == "Cannot reuse any of your last 3 passwords"
            assert excinfo.value.error_code == "VALIDATION_ERROR"
            assert "new_password" in excinfo.value.detail["fields"]

        runtime.credentials.set_password(user.id, "Fourth123!")
        # Fell out of the window
        runtime.credentials.assert_not_reused(user.id, TEST_PASSWORD)


class TestVerify:
    async def test_success_clears_failures(self, runtime, make_user, ctx):
        user = make_user()
        await _fail(runtime, user.email, ctx, 2)
        verified = await runtime.credentials.verify(user.email, TEST_PASSWORD, ctx)
        assert verified.id == user.id
        refreshed = runtime.store.get_user(user.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.last_login_at is not None

    async def test_unknown_email_uniform_error(self, runtime, ctx):
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.credentials.verify("ghost@example.com", TEST_PASSWORD, ctx)
        assert excinfo.value.message == INVALID_CREDENTIALS_MESSAGE
        events, _ = runtime.store.list_audit_events(action="AUTH_LOGIN_FAILURE")
        assert events[0].metadata["reason"] == "user_not_found"

    async def test_inactive_user_uniform_error(self, runtime, make_user, ctx):
        user = make_user(active=False)
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.credentials.verify(user.email, TEST_PASSWORD, ctx)
        assert excinfo.value.message == INVALID_CREDENTIALS_MESSAGE

    async def test_email_lookup_is_case_insensitive(self, runtime, make_user, ctx):
        user = make_user("Mixed@Example.com")
        verified = await runtime.credentials.verify("MIXED@example.COM", TEST_PASSWORD, ctx)
        assert verified.id == user.id


class TestLockout:
    async def test_locks_on_threshold_attempt(self, runtime, make_user, ctx):
        user = make_user()
        await _fail(runtime, user.email, ctx, 4)
        assert not runtime.store.get_user(user.id).is_locked()
        with pytest.raises(AccountLockedError) as excinfo:
            await runtime.credentials.verify(user.email, "wrong-password-1", ctx)
        assert excinfo.value.status_code == 423
        assert excinfo.value.retry_after_seconds > 0
        assert "Retry-After" in excinfo.value.headers

        events, _ = runtime.store.list_audit_events(action="SECURITY_ACCOUNT_LOCKED")
        assert len(events) == 1
        assert "account_locked" in outbox_tags(runtime)

    async def test_correct_password_rejected_while_locked(self, runtime, make_user, ctx):
        user = make_user()
        await _fail(runtime, user.email, ctx, 5)
        with pytest.raises(AccountLockedError):
            await runtime.credentials.verify(user.email, TEST_PASSWORD, ctx)

    async def test_attempts_during_lock_do_not_extend(self, runtime, make_user, ctx):
        user = make_user()
        await _fail(runtime, user.email, ctx, 5)
        locked_until = runtime.store.get_user(user.id).locked_until
        await _fail(runtime, user.email, ctx, 3)
        refreshed = runtime.store.get_user(user.id)
        assert refreshed.locked_until == locked_until
        assert refreshed.failed_login_attempts == 5

    async def test_expired_lock_clears(self, runtime, make_user, ctx):
        user = make_user()
        await _fail(runtime, user.email, ctx, 5)
        runtime.store.update_user(user.id, locked_until=_now() - timedelta(seconds=1))
        status = runtime.credentials.check_account_locked(user.id)
        assert status.locked is False
        assert runtime.store.get_user(user.id).failed_login_attempts == 0
        verified = await runtime.credentials.verify(user.email, TEST_PASSWORD, ctx)
        assert verified.id == user.id


class TestUnlock:
    async def test_request_unlock_is_uniform(self, runtime, make_user, ctx):
        make_user()
        assert await runtime.credentials.request_unlock("user@example.com", ctx) == UNLOCK_REQUEST_MESSAGE
        assert await runtime.credentials.request_unlock("ghost@example.com", ctx) == UNLOCK_REQUEST_MESSAGE
        # Not locked, so nothing was sent
        assert "account_unlock" not in outbox_tags(runtime)

    async def test_unlock_flow_and_replay(self, runtime, make_user, ctx):
        user = make_user()
        await _fail(runtime, user.email, ctx, 5)
        await runtime.credentials.request_unlock(user.email, ctx)
        token = outbox_token(runtime, "account_unlock")
        assert token

        result = await runtime.credentials.redeem_unlock_token(token, ctx)
        assert result.unlocked is True
        assert result.was_locked is True
        assert not runtime.store.get_user(user.id).is_locked()

        replay = await runtime.credentials.redeem_unlock_token(token, ctx)
        assert replay.unlocked is False
        assert replay.message == ALREADY_USED_MESSAGE

    async def test_unlock_when_not_locked(self, runtime, make_user, ctx):
        user = make_user()
        token = runtime.tokens.issue(user.id, TokenKind.ACCOUNT_UNLOCK, timedelta(hours=1))
        result = await runtime.credentials.redeem_unlock_token(token, ctx)
        assert result.unlocked is False
        assert result.message == NOT_LOCKED_MESSAGE

    async def test_unknown_and_expired_tokens(self, runtime, make_user, ctx):
        user = make_user()
        with pytest.raises(TokenInvalidError):
            await runtime.credentials.redeem_unlock_token("0" * 64, ctx)
        token = runtime.tokens.issue(user.id, TokenKind.ACCOUNT_UNLOCK, timedelta(seconds=-1))
        with pytest.raises(TokenExpiredError):
            await runtime.credentials.redeem_unlock_token(token, ctx)

    async def test_unlock_requests_rate_limited(self, runtime, ctx):
        for _ in range(3):
            await runtime.credentials.request_unlock("ghost@example.com", ctx)
        with pytest.raises(RateLimitedError):
            await runtime.credentials.request_unlock("ghost@example.com", ctx)

    async def test_admin_unlock(self, runtime, make_user, make_admin, ctx):
        admin = make_admin()
        user = make_user()
        await _fail(runtime, user.email, ctx, 5)
        runtime.credentials.unlock_account(user.id, admin.id, ctx)
        assert not runtime.store.get_user(user.id).is_locked()
        events, _ = runtime.store.list_audit_events(action="SECURITY_ACCOUNT_UNLOCKED")
        assert events[0].metadata["method"] == "admin"
        assert events[0].metadata["wasLocked"] is True
        with pytest.raises(NotFoundError):
            runtime.credentials.unlock_account("missing", admin.id, ctx)

