from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(dt: Optional[datetime] = None) -> int:
    return int((dt or _now()).timestamp() * 1000)


class TokenKind(str, Enum):
    """Single-use security token purposes. Each kind owns its own slot per user."""

    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"
    ACCOUNT_UNLOCK = "account_unlock"


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_verified: bool = False
    # Fernet ciphertext; MemoryStore.get_two_factor_secret decrypts it.
    two_factor_secret: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or _now())

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.username or self.email


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def new(cls, name: str, slug: str) -> "Organization":
        return cls(id=str(uuid.uuid4()), name=name, slug=slug)


@dataclass
class RoleGrant:
    id: str
    user_id: str
    role_name: str
    organization_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    @property
    def is_platform(self) -> bool:
        return self.organization_id is None


@dataclass
class UserSession:
    """Persisted device record backing a sealed session's bearer token."""

    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_active_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "UserSession":
        now = _now()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            last_active_at=now,
        )


@dataclass
class RememberMeToken:
    id: str
    user_id: str
    series: str
    token_hash: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_used_at: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _now())

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class SecurityToken:
    user_id: str
    kind: TokenKind
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_now)
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _now())


@dataclass(frozen=True)
class AuditEvent:
    id: str
    action: str
    category: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)


@dataclass
class ImpersonationData:
    original_user_id: str
    original_email: str
    original_role: str
    started_at: int

    def to_dict(self) -> dict:
        return {
            "original_user_id": self.original_user_id,
            "original_email": self.original_email,
            "original_role": self.original_role,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImpersonationData":
        return cls(
            original_user_id=str(data["original_user_id"]),
            original_email=str(data["original_email"]),
            original_role=str(data["original_role"]),
            started_at=int(data["started_at"]),
        )


@dataclass
class OrganizationContext:
    id: str
    name: str
    slug: str
    role: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "slug": self.slug, "role": self.role}

    @classmethod
    def from_dict(cls, data: dict) -> "OrganizationContext":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            slug=str(data["slug"]),
            role=str(data["role"]),
        )


@dataclass
class SessionData:
    """Client-held session contents; sealed by ``SessionManager``."""

    user_id: str = ""
    email: str = ""
    role: str = "ROLE_USER"
    is_logged_in: bool = False
    session_created_at: int = 0
    impersonating: Optional[ImpersonationData] = None
    organization: Optional[OrganizationContext] = None
    csrf_token: Optional[str] = None
    session_token: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role,
            "is_logged_in": self.is_logged_in,
            "session_created_at": self.session_created_at,
            "impersonating": self.impersonating.to_dict() if self.impersonating else None,
            "organization": self.organization.to_dict() if self.organization else None,
            "csrf_token": self.csrf_token,
            "session_token": self.session_token,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionData":
        impersonating = data.get("impersonating")
        organization = data.get("organization")
        return cls(
            user_id=str(data.get("user_id") or ""),
            email=str(data.get("email") or ""),
            role=str(data.get("role") or "ROLE_USER"),
            is_logged_in=bool(data.get("is_logged_in")),
            session_created_at=int(data.get("session_created_at") or 0),
            impersonating=ImpersonationData.from_dict(impersonating) if impersonating else None,
            organization=OrganizationContext.from_dict(organization) if organization else None,
            csrf_token=data.get("csrf_token"),
            session_token=data.get("session_token"),
        )


def empty_session() -> SessionData:
    return SessionData()
