from __future__ import annotations

import math
from typing import Callable, Optional

from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditSink, RequestContext
from trustcore.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ForbiddenError,
    ImpersonationBlockedError,
    NotFoundError,
    ServerError,
)
from trustcore.service.roles import RoleChecker
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import ImpersonationData, SessionData, epoch_ms

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MINUTES = 60


def is_impersonating(session: SessionData) -> bool:
    return session.impersonating is not None


def has_impersonation_expired(
    session: SessionData,
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
    now_ms: Optional[int] = None,
) -> bool:
    if session.impersonating is None:
        return False
    elapsed = (now_ms if now_ms is not None else epoch_ms()) - session.impersonating.started_at
    return elapsed > timeout_minutes * 60_000


def impersonation_time_remaining(
    session: SessionData,
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
    now_ms: Optional[int] = None,
) -> Optional[int]:
    """Whole minutes left, rounded up; None when not impersonating."""
    if session.impersonating is None:
        return None
    elapsed = (now_ms if now_ms is not None else epoch_ms()) - session.impersonating.started_at
    remaining = timeout_minutes * 60_000 - elapsed
    return max(0, math.ceil(remaining / 60_000))


def impersonation_duration(session: SessionData, now_ms: Optional[int] = None) -> Optional[int]:
    """Elapsed seconds since impersonation began, rounded down."""
    if session.impersonating is None:
        return None
    elapsed = (now_ms if now_ms is not None else epoch_ms()) - session.impersonating.started_at
    return max(0, elapsed // 1000)


def assert_not_impersonating(session: SessionData) -> None:
    if session.impersonating is not None:
        raise ImpersonationBlockedError()


class ImpersonationController:
    """Swaps an admin's session identity for a target user's, and back.

    The original identity lives only inside the sealed session. Expiry is
    checked lazily whenever a session is resolved.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditSink,
        roles: RoleChecker,
        *,
        timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.roles = roles
        self.timeout_minutes = timeout_minutes
        self._clock = clock or epoch_ms

    def start(
        self, session: SessionData, target_user_id: str, context: RequestContext
    ) -> SessionData:
        if not session.is_logged_in:
            raise AuthenticationError("Authentication required")
        if session.impersonating is not None:
            raise ForbiddenError("Already impersonating a user. Exit first.")
        if not self.roles.is_platform_admin(session.user_id):
            raise AuthorizationError("Admin access required")
        if target_user_id == session.user_id:
            raise ForbiddenError("Cannot impersonate yourself")
        target = self.store.get_user(target_user_id)
        if target is None:
            raise NotFoundError("User not found")
        if not target.is_active:
            raise ForbiddenError("Cannot impersonate inactive user")
        if self.roles.is_platform_admin(target.id):
            raise ForbiddenError("Cannot impersonate another admin")

        admin_user_id, admin_email = session.user_id, session.email
        session.impersonating = ImpersonationData(
            original_user_id=session.user_id,
            original_email=session.email,
            original_role=session.role,
            started_at=self._clock(),
        )
        session.user_id = target.id
        session.email = target.email
        session.role = self.roles.highest_platform_role(target.id)

        logger.info(
            "impersonation_started",
            admin_user_id=admin_user_id,
            target_user_id=target.id,
        )
        self.audit.log(
            AuditAction.ADMIN_IMPERSONATION_START,
            AuditCategory.ADMIN,
            user_id=admin_user_id,
            context=context,
            metadata={
                "adminUserId": admin_user_id,
                "adminEmail": admin_email,
                "targetUserId": target.id,
                "targetEmail": target.email,
            },
        )
        return session

    def _restore(self, session: SessionData) -> tuple[ImpersonationData, int, str, str]:
        record = session.impersonating
        if record is None:
            raise ServerError("Session has no impersonation to restore")
        duration = impersonation_duration(session, self._clock()) or 0
        target_user_id, target_email = session.user_id, session.email
        session.user_id = record.original_user_id
        session.email = record.original_email
        session.role = record.original_role
        session.impersonating = None
        return record, duration, target_user_id, target_email

    def exit(self, session: SessionData, context: RequestContext) -> SessionData:
        if session.impersonating is None:
            raise ForbiddenError("Not currently impersonating")
        record, duration, target_user_id, target_email = self._restore(session)
        logger.info(
            "impersonation_ended",
            admin_user_id=record.original_user_id,
            target_user_id=target_user_id,
            duration_seconds=duration,
        )
        self.audit.log(
            AuditAction.ADMIN_IMPERSONATION_END,
            AuditCategory.ADMIN,
            user_id=record.original_user_id,
            context=context,
            metadata={
                "adminUserId": record.original_user_id,
                "adminEmail": record.original_email,
                "targetUserId": target_user_id,
                "targetEmail": target_email,
                "durationSeconds": duration,
            },
        )
        return session

    def expire_if_needed(self, session: SessionData, context: RequestContext) -> bool:
        """End an over-long impersonation; True if the session was changed."""
        if not has_impersonation_expired(session, self.timeout_minutes, self._clock()):
            return False
        record, duration, target_user_id, _ = self._restore(session)
        if self._expiry_recorded(record):
            # A stale cookie replaying an impersonation that already ended
            return True
        logger.info(
            "impersonation_expired",
            admin_user_id=record.original_user_id,
            target_user_id=target_user_id,
            duration_seconds=duration,
        )
        self.audit.log(
            AuditAction.ADMIN_IMPERSONATION_EXPIRED,
            AuditCategory.ADMIN,
            user_id=record.original_user_id,
            context=context,
            metadata={
                "adminUserId": record.original_user_id,
                "targetUserId": target_user_id,
                "startedAt": record.started_at,
                "durationSeconds": duration,
                "timeoutMinutes": self.timeout_minutes,
            },
        )
        return True

    def _expiry_recorded(self, record: ImpersonationData) -> bool:
        events, _ = self.store.list_audit_events(
            user_id=record.original_user_id,
            action=AuditAction.ADMIN_IMPERSONATION_EXPIRED.value,
            limit=50,
        )
        return any(e.metadata.get("startedAt") == record.started_at for e in events)

    def time_remaining(self, session: SessionData) -> Optional[int]:
        return impersonation_time_remaining(session, self.timeout_minutes, self._clock())


__all__ = [
    "ImpersonationController",
    "assert_not_impersonating",
    "has_impersonation_expired",
    "impersonation_duration",
    "impersonation_time_remaining",
    "is_impersonating",
]
