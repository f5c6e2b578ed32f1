"""Tests for rotating remember-me cookies and theft detection."""
from datetime import timedelta

import pytest

from trustcore.service.errors import NotFoundError
from trustcore.service.remember_me import parse_cookie
from trustcore.storage.models import _now


class TestParseCookie:
    def test_valid(self):
        assert parse_cookie("abc:def") == ("abc", "def")

    @pytest.mark.parametrize("value", [None, "", "abc", "a:b:c", ":def", "abc:"])
    def test_malformed(self, value):
        assert parse_cookie(value) is None


class TestIssueAndValidate:
    def test_issue_stores_only_hash(self, runtime, make_user):
        user = make_user()
        cookie = runtime.remember_me.issue(user.id, "1.2.3.4", "agent")
        series, validator = cookie.value.split(":")
        record = runtime.store.get_remember_me_token(series)
        assert record.user_id == user.id
        assert record.token_hash != validator
        assert len(series) == 64 and len(validator) == 64

    def test_validate_rotates_validator(self, runtime, make_user):
        user = make_user()
        cookie = runtime.remember_me.issue(user.id)
        result = runtime.remember_me.validate(cookie.value, "5.6.7.8", "agent-2")
        assert result.valid
        assert result.user_id == user.id
        assert result.new_cookie.series == cookie.series
        assert result.new_cookie.value != cookie.value
        assert result.new_cookie.expires_at == cookie.expires_at
        record = runtime.store.get_remember_me_token(cookie.series)
        assert record.ip_address == "5.6.7.8"

    def test_replayed_validator_is_theft(self, runtime, make_user):
        user = make_user()
        stolen = runtime.remember_me.issue(user.id)
        other = runtime.remember_me.issue(user.id)
        assert runtime.remember_me.validate(stolen.value).valid

        replay = runtime.remember_me.validate(stolen.value)
        assert replay.valid is False
        assert replay.theft_detected is True
        assert replay.user_id == user.id
        # Every series the user owns is gone, not just the stolen one
        assert runtime.remember_me.validate(other.value).valid is False
        assert runtime.remember_me.list_active(user.id) == []
        events, _ = runtime.store.list_audit_events(action="AUTH_REMEMBER_ME_THEFT_DETECTED")
        assert events[0].category == "security"
        assert events[0].metadata["revokedTokens"] == 2

    def test_unknown_series(self, runtime):
        result = runtime.remember_me.validate("f" * 64 + ":" + "0" * 64)
        assert result.valid is False
        assert result.theft_detected is False

    def test_expired_token_deleted(self, runtime, make_user):
        user = make_user()
        cookie = runtime.remember_me.issue(user.id)
        runtime.store.get_remember_me_token(cookie.series).expires_at = _now() - timedelta(seconds=1)
        assert runtime.remember_me.validate(cookie.value).valid is False
        assert runtime.store.get_remember_me_token(cookie.series) is None

    def test_inactive_user_rejected(self, runtime, make_user):
        user = make_user()
        cookie = runtime.remember_me.issue(user.id)
        runtime.store.update_user(user.id, is_active=False)
        assert runtime.remember_me.validate(cookie.value).valid is False


class TestRevoke:
    def test_revoke_own_series(self, runtime, make_user):
        user = make_user()
        cookie = runtime.remember_me.issue(user.id)
        assert runtime.remember_me.revoke(cookie.series, user.id) is True
        assert runtime.remember_me.validate(cookie.value).valid is False
        assert runtime.remember_me.revoke(cookie.series, user.id) is False

    def test_revoke_other_users_series(self, runtime, make_user):
        owner = make_user("owner@example.com")
        intruder = make_user("intruder@example.com")
        cookie = runtime.remember_me.issue(owner.id)
        with pytest.raises(NotFoundError):
            runtime.remember_me.revoke(cookie.series, intruder.id)
        assert runtime.remember_me.validate(cookie.value).valid

    def test_revoke_unknown_series(self, runtime, make_user):
        user = make_user()
        assert runtime.remember_me.revoke("missing", user.id) is False

    def test_list_active_and_cleanup(self, runtime, make_user):
        user = make_user()
        first = runtime.remember_me.issue(user.id)
        second = runtime.remember_me.issue(user.id)
        runtime.store.get_remember_me_token(first.series).expires_at = _now() - timedelta(days=1)
        active = runtime.remember_me.list_active(user.id)
        assert [t.series for t in active] == [second.series]
        assert runtime.remember_me.cleanup_expired() == 1
        assert runtime.store.get_remember_me_token(first.series) is None

    def test_revoke_all(self, runtime, make_user):
        user = make_user()
        runtime.remember_me.issue(user.id)
        runtime.remember_me.issue(user.id)
        assert runtime.remember_me.revoke_all(user.id) == 2
        assert runtime.remember_me.list_active(user.id) == []
