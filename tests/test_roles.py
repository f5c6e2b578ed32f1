"""Tests for role checks and last-administrator safeguards."""
import pytest

from trustcore.service.errors import ForbiddenError, NotFoundError, ValidationError
from trustcore.service.roles import (
    ROLE_ADMIN,
    ROLE_MODERATOR,
    ROLE_OWNER,
    ROLE_USER,
    role_capabilities,
    role_level,
    validate_role_name_format,
)


class TestHierarchy:
    def test_levels(self):
        assert role_level(ROLE_OWNER) > role_level(ROLE_ADMIN) > role_level(ROLE_MODERATOR)
        assert role_level(ROLE_MODERATOR) > role_level(ROLE_USER)
        assert role_level("ROLE_UNKNOWN") == 0

    def test_name_format(self):
        assert validate_role_name_format("ROLE_ADMIN")
        assert not validate_role_name_format("admin")
        assert not validate_role_name_format("ROLE_")
        assert not validate_role_name_format("")

    def test_capabilities_projection(self):
        caps = role_capabilities(ROLE_MODERATOR)
        assert caps == {"role": ROLE_MODERATOR, "level": 2, "is_admin": False, "is_moderator": True}


class TestRoleChecker:
    def test_platform_grant_satisfies_any_scope(self, runtime, make_user):
        user = make_user(role=ROLE_MODERATOR)
        assert runtime.roles.is_granted(user.id, ROLE_MODERATOR)
        assert runtime.roles.is_granted(user.id, ROLE_USER, "some-org")
        assert not runtime.roles.is_granted(user.id, ROLE_ADMIN)

    def test_org_grant_only_in_its_org(self, runtime, make_user):
        user = make_user()
        org = runtime.store.create_organization("Acme")
        runtime.store.grant_role(user.id, ROLE_OWNER, org.id)
        assert runtime.roles.is_granted(user.id, ROLE_ADMIN, org.id)
        assert not runtime.roles.is_granted(user.id, ROLE_ADMIN)
        assert not runtime.roles.is_platform_admin(user.id)

    def test_highest_platform_role(self, runtime, make_user, make_admin):
        assert runtime.roles.highest_platform_role(make_user().id) == ROLE_USER
        assert runtime.roles.highest_platform_role(make_admin().id) == ROLE_ADMIN


class TestSafeguards:
    def test_last_platform_admin_blocked(self, runtime, make_admin, ctx):
        admin = make_admin()
        with pytest.raises(ForbiddenError, match="last platform administrator"):
            runtime.safeguards.remove_role(admin.id, ROLE_ADMIN, None, admin.id, ctx)
        assert runtime.roles.is_platform_admin(admin.id)
        events, _ = runtime.store.list_audit_events(action="ROLE_REMOVAL_BLOCKED")
        assert events[0].metadata["reason"] == "last_platform_admin"
        assert events[0].category == "security"

    def test_second_admin_can_be_removed(self, runtime, make_admin, ctx):
        first = make_admin()
        second = make_admin("admin2@example.com")
        assert runtime.safeguards.remove_role(second.id, ROLE_ADMIN, None, first.id, ctx) is True
        assert not runtime.roles.is_platform_admin(second.id)
        with pytest.raises(ForbiddenError):
            runtime.safeguards.remove_role(first.id, ROLE_ADMIN, None, first.id, ctx)

    def test_last_org_admin_blocked(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        owner = make_user("owner@example.com")
        org = runtime.store.create_organization("Acme")
        runtime.store.grant_role(owner.id, ROLE_OWNER, org.id)
        with pytest.raises(ForbiddenError, match='organization "Acme"'):
            runtime.safeguards.remove_role(owner.id, ROLE_OWNER, org.id, actor.id, ctx)

    def test_org_admin_with_second_admin_grant(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        owner = make_user("owner@example.com")
        org = runtime.store.create_organization("Acme")
        runtime.store.grant_role(owner.id, ROLE_OWNER, org.id)
        runtime.store.grant_role(owner.id, ROLE_ADMIN, org.id)
        assert runtime.safeguards.remove_role(owner.id, ROLE_OWNER, org.id, actor.id, ctx)
        assert runtime.roles.is_granted(owner.id, ROLE_ADMIN, org.id)

    def test_non_admin_role_removal_not_guarded(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        mod = make_user("mod@example.com", role=ROLE_MODERATOR)
        assert runtime.safeguards.remove_role(mod.id, ROLE_MODERATOR, None, actor.id, ctx)
        events, _ = runtime.store.list_audit_events(action="ROLE_REMOVED")
        assert events[0].metadata == {"targetUserId": mod.id, "roleName": ROLE_MODERATOR}

    def test_removing_missing_grant_returns_false(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        user = make_user("plain@example.com")
        assert runtime.safeguards.remove_role(user.id, ROLE_MODERATOR, None, actor.id, ctx) is False


class TestGrant:
    def test_grant_audits(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        user = make_user("plain@example.com")
        runtime.safeguards.grant_role(user.id, ROLE_MODERATOR, None, actor.id, ctx)
        assert runtime.roles.highest_platform_role(user.id) == ROLE_MODERATOR
        events, _ = runtime.store.list_audit_events(action="ROLE_GRANTED")
        assert events[0].user_id == actor.id

    def test_grant_rejects_unknown_role(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        user = make_user("plain@example.com")
        with pytest.raises(ValidationError):
            runtime.safeguards.grant_role(user.id, "ROLE_WIZARD", None, actor.id, ctx)

    def test_grant_unknown_user_or_org(self, runtime, make_user, make_admin, ctx):
        actor = make_admin()
        user = make_user("plain@example.com")
        with pytest.raises(NotFoundError):
            runtime.safeguards.grant_role("missing", ROLE_USER, None, actor.id, ctx)
        with pytest.raises(NotFoundError):
            runtime.safeguards.grant_role(user.id, ROLE_ADMIN, "missing-org", actor.id, ctx)
