"""Role hierarchy, grant checks and last-admin safeguards.

``ROLE_HIERARCHY`` is the only definition of role ordering. Anything shipped
to clients is derived from it by ``role_capabilities`` and is never consulted
for enforcement.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Optional

from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditSink, RequestContext
from trustcore.service.errors import ForbiddenError, NotFoundError, ValidationError
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import RoleGrant

logger = get_logger(__name__)

ROLE_OWNER = "ROLE_OWNER"
ROLE_ADMIN = "ROLE_ADMIN"
ROLE_MODERATOR = "ROLE_MODERATOR"
ROLE_USER = "ROLE_USER"
ROLE_EDITOR = "ROLE_EDITOR"

ROLE_HIERARCHY: dict[str, int] = {
    ROLE_OWNER: 4,
    ROLE_ADMIN: 3,
    ROLE_MODERATOR: 2,
    ROLE_USER: 1,
    ROLE_EDITOR: 1,
}

PLATFORM_ADMIN_ROLES = frozenset({ROLE_ADMIN})
ORGANIZATION_ADMIN_ROLES = frozenset({ROLE_ADMIN, ROLE_OWNER})

_ROLE_NAME_RE = re.compile(r"^ROLE_[A-Z][A-Z0-9_]+$")


def validate_role_name_format(name: str) -> bool:
    return bool(name) and len(name) > 7 and bool(_ROLE_NAME_RE.match(name))


def role_level(role_name: str) -> int:
    return ROLE_HIERARCHY.get(role_name, 0)


def role_capabilities(role_name: str) -> dict:
    """Read-only projection for clients; not an authorization decision."""
    level = role_level(role_name)
    return {
        "role": role_name,
        "level": level,
        "is_admin": level >= ROLE_HIERARCHY[ROLE_ADMIN],
        "is_moderator": level >= ROLE_HIERARCHY[ROLE_MODERATOR],
    }


@dataclass(frozen=True)
class SafeguardResult:
    allowed: bool
    reason: Optional[str] = None


class RoleChecker:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def is_granted(
        self,
        user_id: str,
        required_role: str,
        organization_id: Optional[str] = None,
    ) -> bool:
        """True if a platform grant, or a grant in ``organization_id``, meets ``required_role``."""
        required = role_level(required_role)
        if required == 0:
            return False
        for grant in self.store.list_role_grants(user_id):
            if grant.organization_id is not None and grant.organization_id != organization_id:
                continue
            if role_level(grant.role_name) >= required:
                return True
        return False

    def is_platform_admin(self, user_id: str) -> bool:
        return bool(
            self.store.list_role_grants(
                user_id, role_names=PLATFORM_ADMIN_ROLES, platform_only=True
            )
        )

    def highest_platform_role(self, user_id: str) -> str:
        names = {g.role_name for g in self.store.list_role_grants(user_id, platform_only=True)}
        for candidate in (ROLE_ADMIN, ROLE_MODERATOR):
            if candidate in names:
                return candidate
        return ROLE_USER


class RoleSafeguards:
    """Refuses role removals that would leave a scope without an administrator.

    The count-then-revoke sequence runs under one lock so two concurrent
    removals cannot both observe two admins and leave zero.
    """

    def __init__(self, store: MemoryStore, audit: AuditSink) -> None:
        self.store = store
        self.audit = audit
        self._lock = threading.Lock()

    def _blocked(
        self,
        reason: str,
        message: str,
        *,
        target_user_id: str,
        role_name: str,
        admin_count: int,
        actor_user_id: Optional[str],
        organization_id: Optional[str] = None,
        organization_name: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SafeguardResult:
        metadata = {
            "targetUserId": target_user_id,
            "reason": reason,
            "roleName": role_name,
            "adminCount": admin_count,
        }
        if organization_id:
            metadata["organizationId"] = organization_id
            metadata["organizationName"] = organization_name
        logger.warning(
            "role_removal_blocked",
            reason=reason,
            target_user_id=target_user_id,
            role_name=role_name,
        )
        self.audit.log(
            AuditAction.ROLE_REMOVAL_BLOCKED,
            AuditCategory.SECURITY,
            user_id=actor_user_id,
            organization_id=organization_id,
            context=context,
            metadata=metadata,
        )
        return SafeguardResult(allowed=False, reason=message)

    def check_last_platform_admin(
        self,
        target_user_id: str,
        role_name: str,
        actor_user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SafeguardResult:
        if role_name not in PLATFORM_ADMIN_ROLES:
            return SafeguardResult(allowed=True)
        holders = self.store.list_role_grants(role_names=PLATFORM_ADMIN_ROLES, platform_only=True)
        if not any(g.user_id == target_user_id for g in holders):
            return SafeguardResult(allowed=True)
        admin_count = len({g.user_id for g in holders})
        if admin_count <= 1:
            return self._blocked(
                "last_platform_admin",
                "Cannot remove the last platform administrator",
                target_user_id=target_user_id,
                role_name=role_name,
                admin_count=admin_count,
                actor_user_id=actor_user_id,
                context=context,
            )
        return SafeguardResult(allowed=True)

    def check_last_org_admin(
        self,
        target_user_id: str,
        role_name: str,
        organization_id: str,
        actor_user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SafeguardResult:
        if role_name not in ORGANIZATION_ADMIN_ROLES:
            return SafeguardResult(allowed=True)
        holders = self.store.list_role_grants(
            role_names=ORGANIZATION_ADMIN_ROLES, organization_id=organization_id
        )
        if not any(g.user_id == target_user_id and g.role_name == role_name for g in holders):
            return SafeguardResult(allowed=True)
        admin_users = {g.user_id for g in holders}
        # Another ADMIN/OWNER grant held by the same user keeps the scope covered
        target_other = [
            g for g in holders if g.user_id == target_user_id and g.role_name != role_name
        ]
        if len(admin_users) <= 1 and not target_other:
            org = self.store.get_organization(organization_id)
            org_name = org.name if org else organization_id
            return self._blocked(
                "last_org_admin",
                f'Cannot remove the last administrator from organization "{org_name}"',
                target_user_id=target_user_id,
                role_name=role_name,
                admin_count=len(admin_users),
                actor_user_id=actor_user_id,
                organization_id=organization_id,
                organization_name=org_name,
                context=context,
            )
        return SafeguardResult(allowed=True)

    def check_role_removal_safeguards(
        self,
        target_user_id: str,
        role_name: str,
        organization_id: Optional[str],
        actor_user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SafeguardResult:
        if organization_id is None:
            return self.check_last_platform_admin(
                target_user_id, role_name, actor_user_id, context
            )
        return self.check_last_org_admin(
            target_user_id, role_name, organization_id, actor_user_id, context
        )

    def grant_role(
        self,
        target_user_id: str,
        role_name: str,
        organization_id: Optional[str],
        actor_user_id: str,
        context: Optional[RequestContext] = None,
    ) -> RoleGrant:
        if not validate_role_name_format(role_name) or role_name not in ROLE_HIERARCHY:
            raise ValidationError(
                "Invalid role name", detail={"fields": {"role_name": ["Unknown role"]}}
            )
        if self.store.get_user(target_user_id) is None:
            raise NotFoundError("User not found")
        if organization_id is not None and self.store.get_organization(organization_id) is None:
            raise NotFoundError("Organization not found")
        grant = self.store.grant_role(target_user_id, role_name, organization_id)
        self.audit.log(
            AuditAction.ROLE_GRANTED,
            AuditCategory.ADMIN,
            user_id=actor_user_id,
            organization_id=organization_id,
            context=context,
            metadata={"targetUserId": target_user_id, "roleName": role_name},
        )
        return grant

    def remove_role(
        self,
        target_user_id: str,
        role_name: str,
        organization_id: Optional[str],
        actor_user_id: str,
        context: Optional[RequestContext] = None,
    ) -> bool:
        """Revoke a grant unless doing so would orphan the scope's admins."""
        with self._lock:
            verdict = self.check_role_removal_safeguards(
                target_user_id, role_name, organization_id, actor_user_id, context
            )
            if not verdict.allowed:
                raise ForbiddenError(
                    verdict.reason or "Role removal blocked",
                    detail={"reason": "role_removal_blocked"},
                )
            removed = self.store.revoke_role(target_user_id, role_name, organization_id)
        if removed:
            self.audit.log(
                AuditAction.ROLE_REMOVED,
                AuditCategory.ADMIN,
                user_id=actor_user_id,
                organization_id=organization_id,
                context=context,
                metadata={"targetUserId": target_user_id, "roleName": role_name},
            )
        return removed


__all__ = [
    "ROLE_ADMIN",
    "ROLE_EDITOR",
    "ROLE_HIERARCHY",
    "ROLE_MODERATOR",
    "ROLE_OWNER",
    "ROLE_USER",
    "RoleChecker",
    "RoleSafeguards",
    "SafeguardResult",
    "role_capabilities",
    "role_level",
    "validate_role_name_format",
]
