"""Tests for the append-only audit trail."""
from datetime import timedelta
from unittest.mock import patch

from trustcore.service.audit import AuditAction, AuditCategory, AuditQuery, RequestContext
from trustcore.storage.models import _now


class TestAuditLog:
    def test_log_records_context(self, runtime, ctx):
        event = runtime.audit.log(
            AuditAction.AUTH_LOGIN_SUCCESS,
            AuditCategory.AUTHENTICATION,
            user_id="u1",
            context=ctx,
            metadata={"method": "password"},
        )
        assert event.action == "AUTH_LOGIN_SUCCESS"
        assert event.category == "authentication"
        assert event.ip_address == ctx.client_ip
        assert event.user_agent == ctx.user_agent
        assert event.metadata == {"method": "password"}

    def test_explicit_ip_wins_over_context(self, runtime):
        event = runtime.audit.log(
            AuditAction.AUTH_LOGOUT,
            AuditCategory.AUTHENTICATION,
            context=RequestContext(client_ip="10.0.0.1"),
            ip_address="10.0.0.2",
        )
        assert event.ip_address == "10.0.0.2"

    def test_write_failure_is_swallowed(self, runtime):
        with patch.object(runtime.store, "append_audit_event", side_effect=RuntimeError("disk")):
            result = runtime.audit.log(AuditAction.AUTH_LOGOUT, AuditCategory.AUTHENTICATION)
        assert result is None


class TestAuditQuery:
    def _seed(self, runtime):
        runtime.audit.log(AuditAction.AUTH_LOGIN_SUCCESS, AuditCategory.AUTHENTICATION, user_id="a")
        runtime.audit.log(AuditAction.AUTH_LOGIN_FAILURE, AuditCategory.AUTHENTICATION, user_id="a")
        runtime.audit.log(AuditAction.SECURITY_ACCOUNT_LOCKED, AuditCategory.SECURITY, user_id="b")
        runtime.audit.log(
            AuditAction.ROLE_GRANTED, AuditCategory.ADMIN, user_id="c", organization_id="org-1"
        )

    def test_filters(self, runtime):
        self._seed(runtime)
        events, total = runtime.audit.query(AuditQuery(user_id="a"))
        assert total == 2
        events, total = runtime.audit.query(AuditQuery(category="security"))
        assert [e.user_id for e in events] == ["b"]
        events, total = runtime.audit.query(AuditQuery(action="ROLE_GRANTED"))
        assert events[0].organization_id == "org-1"
        _, total = runtime.audit.query(AuditQuery(organization_id="org-1"))
        assert total == 1

    def test_newest_first_with_pagination(self, runtime):
        self._seed(runtime)
        events, total = runtime.audit.query(AuditQuery(limit=2, offset=1))
        assert total == 4
        assert len(events) == 2
        assert events[0].created_at >= events[1].created_at

    def test_time_window(self, runtime):
        self._seed(runtime)
        _, total = runtime.audit.query(AuditQuery(since=_now() + timedelta(minutes=1)))
        assert total == 0
        _, total = runtime.audit.query(AuditQuery(until=_now() + timedelta(minutes=1)))
        assert total == 4

    def test_limit_is_clamped(self, runtime):
        self._seed(runtime)
        events, _ = runtime.audit.query(AuditQuery(limit=0))
        assert len(events) == 1
