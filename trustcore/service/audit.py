from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from trustcore.logging import get_logger
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    SECURITY = "security"
    ADMIN = "admin"


class AuditAction(str, Enum):
    AUTH_LOGIN_SUCCESS = "AUTH_LOGIN_SUCCESS"
    AUTH_LOGIN_FAILURE = "AUTH_LOGIN_FAILURE"
    AUTH_LOGOUT = "AUTH_LOGOUT"
    AUTH_REGISTER = "AUTH_REGISTER"
    AUTH_EMAIL_VERIFIED = "AUTH_EMAIL_VERIFIED"
    AUTH_REMEMBER_ME_CREATED = "AUTH_REMEMBER_ME_CREATED"
    AUTH_REMEMBER_ME_USED = "AUTH_REMEMBER_ME_USED"
    AUTH_REMEMBER_ME_REVOKED = "AUTH_REMEMBER_ME_REVOKED"
    AUTH_REMEMBER_ME_THEFT_DETECTED = "AUTH_REMEMBER_ME_THEFT_DETECTED"
    AUTH_2FA_ENABLED = "AUTH_2FA_ENABLED"
    AUTH_2FA_DISABLED = "AUTH_2FA_DISABLED"
    AUTH_2FA_SUCCESS = "AUTH_2FA_SUCCESS"
    AUTH_2FA_FAILURE = "AUTH_2FA_FAILURE"
    AUTH_2FA_BACKUP_USED = "AUTH_2FA_BACKUP_USED"
    SECURITY_ACCOUNT_LOCKED = "SECURITY_ACCOUNT_LOCKED"
    SECURITY_ACCOUNT_UNLOCKED = "SECURITY_ACCOUNT_UNLOCKED"
    SECURITY_PASSWORD_CHANGED = "SECURITY_PASSWORD_CHANGED"
    SECURITY_PASSWORD_RESET_REQUESTED = "SECURITY_PASSWORD_RESET_REQUESTED"
    SECURITY_ALL_SESSIONS_REVOKED = "SECURITY_ALL_SESSIONS_REVOKED"
    ROLE_GRANTED = "ROLE_GRANTED"
    ROLE_REMOVED = "ROLE_REMOVED"
    ROLE_REMOVAL_BLOCKED = "ROLE_REMOVAL_BLOCKED"
    ADMIN_2FA_RESET = "ADMIN_2FA_RESET"
    ADMIN_IMPERSONATION_START = "ADMIN_IMPERSONATION_START"
    ADMIN_IMPERSONATION_END = "ADMIN_IMPERSONATION_END"
    ADMIN_IMPERSONATION_EXPIRED = "ADMIN_IMPERSONATION_EXPIRED"
    ADMIN_CIRCUIT_BREAKER_RESET = "ADMIN_CIRCUIT_BREAKER_RESET"


@dataclass(frozen=True)
class RequestContext:
    """Caller attributes recorded alongside every audit event."""

    client_ip: str = "unknown"
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AuditQuery:
    user_id: Optional[str] = None
    action: Optional[str] = None
    category: Optional[str] = None
    organization_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class AuditSink:
    """Append-only audit trail.

    Writing is fire-and-forget: a failed write is logged and swallowed so the
    operation being audited still completes.
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def record(self, event: AuditEvent) -> Optional[AuditEvent]:
        try:
            return self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_event_write_failed",
                action=event.action,
                category=event.category,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def log(
        self,
        action: AuditAction,
        category: AuditCategory,
        *,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        if context is not None:
            ip_address = ip_address or context.client_ip
            user_agent = user_agent or context.user_agent
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action.value,
            category=category.value,
            user_id=user_id,
            organization_id=organization_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        logger.info(
            "audit_event",
            action=event.action,
            category=event.category,
            user_id=user_id,
            organization_id=organization_id,
        )
        return self.record(event)

    def query(self, query: AuditQuery) -> tuple[List[AuditEvent], int]:
        limit = max(1, min(query.limit, 500))
        return self.store.list_audit_events(
            user_id=query.user_id,
            action=query.action,
            category=query.category,
            organization_id=query.organization_id,
            since=query.since,
            until=query.until,
            limit=limit,
            offset=max(0, query.offset),
        )


__all__ = ["AuditAction", "AuditCategory", "AuditQuery", "AuditSink", "RequestContext"]
