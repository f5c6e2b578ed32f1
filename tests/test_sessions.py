"""Tests for sealed sessions, device records and session status."""
import json

import pytest
from cryptography.fernet import Fernet

from trustcore.service.sessions import (
    SESSION_DURATION_MS,
    SESSION_WARNING_THRESHOLD_MS,
    SessionManager,
    derive_fernet_key,
)
from trustcore.storage.models import OrganizationContext

SECRET = "test-session-secret-for-testing-only-do-not-use"


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(runtime, clock):
    return SessionManager(runtime.store, runtime.impersonation, secret=SECRET, clock=clock)


class TestSealing:
    def test_round_trip_preserves_fields(self, manager):
        org = OrganizationContext(id="org-1", name="Acme", slug="acme", role="ROLE_OWNER")
        session = manager.create("u1", "a@example.com", "ROLE_USER", organization=org)
        restored = manager.unseal(manager.seal(session))
        assert restored.user_id == "u1"
        assert restored.email == "a@example.com"
        assert restored.is_logged_in is True
        assert restored.organization == org
        assert restored.csrf_token == session.csrf_token

    def test_tampered_blob_reads_as_empty(self, manager):
        blob = manager.seal(manager.create("u1", "a@example.com", "ROLE_USER"))
        middle = len(blob) // 2
        flipped = "B" if blob[middle] == "A" else "A"
        tampered = blob[:middle] + flipped + blob[middle + 1 :]
        session = manager.unseal(tampered)
        assert session.is_logged_in is False
        assert session.user_id == ""

    def test_garbage_and_missing_blob(self, manager):
        assert manager.unseal("not-a-token").is_logged_in is False
        assert manager.unseal(None).is_logged_in is False
        assert manager.unseal("").is_logged_in is False

    def test_other_secret_rejected(self, runtime, manager, clock):
        other = SessionManager(
            runtime.store, runtime.impersonation, secret="another-secret-value-0123456789abc", clock=clock
        )
        blob = other.seal(other.create("u1", "a@example.com", "ROLE_USER"))
        assert manager.unseal(blob).is_logged_in is False

    def test_version_mismatch_rejected(self, manager):
        fernet = Fernet(derive_fernet_key(SECRET))
        document = {"v": 99, "data": {"user_id": "u1", "email": "a@example.com", "is_logged_in": True}}
        blob = fernet.encrypt(json.dumps(document).encode()).decode()
        assert manager.unseal(blob).is_logged_in is False


class TestValidity:
    def test_expired_after_duration(self, manager, clock):
        session = manager.create("u1", "a@example.com", "ROLE_USER")
        clock.now += SESSION_DURATION_MS
        assert manager.is_valid(session)
        clock.now += 1
        assert not manager.is_valid(session)

    def test_get_requires_device_record(self, runtime, make_user, ctx):
        manager = runtime.sessions
        user = make_user()
        token = manager.open_device_session(user, ctx)
        session = manager.create(user.id, user.email, "ROLE_USER", session_token=token)
        blob = manager.seal(session)
        assert manager.get(blob).user_id == user.id

        manager.destroy(session)
        assert manager.get(blob).is_logged_in is False

    def test_get_without_device_token_uses_blob_only(self, manager):
        blob = manager.seal(manager.create("u1", "a@example.com", "ROLE_USER"))
        assert manager.get(blob).is_logged_in is True


class TestStatusAndExtend:
    def test_status_for_fresh_session(self, manager, clock):
        session = manager.create("u1", "a@example.com", "ROLE_USER")
        status = manager.status(session)
        assert status.is_valid
        assert status.expires_at == clock.now + SESSION_DURATION_MS
        assert status.time_remaining_ms == SESSION_DURATION_MS
        assert status.should_warn is False

    def test_status_warns_near_expiry(self, manager, clock):
        session = manager.create("u1", "a@example.com", "ROLE_USER")
        clock.now += SESSION_DURATION_MS - SESSION_WARNING_THRESHOLD_MS + 1
        assert manager.status(session).should_warn is True

    def test_extend_resets_expiry(self, manager, clock):
        session = manager.create("u1", "a@example.com", "ROLE_USER")
        clock.now += SESSION_DURATION_MS - 1000
        assert manager.extend(session) is True
        status = manager.status(session)
        assert status.time_remaining_ms == SESSION_DURATION_MS
        assert status.should_warn is False

    def test_extend_rejects_invalid_session(self, manager, clock):
        session = manager.create("u1", "a@example.com", "ROLE_USER")
        clock.now += SESSION_DURATION_MS + 1
        assert manager.extend(session) is False
        status = manager.status(session)
        assert status.to_dict() == {
            "is_valid": False,
            "expires_at": None,
            "time_remaining_ms": 0,
            "should_warn": False,
        }

    def test_rotate_csrf_token(self, manager):
        session = manager.create("u1", "a@example.com", "ROLE_USER")
        before = session.csrf_token
        after = manager.rotate_csrf_token(session)
        assert after != before
        assert session.csrf_token == after


class TestDestroy:
    def test_destroy_returns_empty_session(self, runtime, make_user, ctx):
        user = make_user()
        token = runtime.sessions.open_device_session(user, ctx)
        session = runtime.sessions.create(user.id, user.email, "ROLE_USER", session_token=token)
        cleared = runtime.sessions.destroy(session)
        assert cleared.is_logged_in is False
        assert runtime.store.list_user_sessions(user.id) == []

    def test_device_session_records_context(self, runtime, make_user, ctx):
        user = make_user()
        runtime.sessions.open_device_session(user, ctx)
        (record,) = runtime.store.list_user_sessions(user.id)
        assert record.ip_address == ctx.client_ip
        assert record.user_agent == ctx.user_agent
