from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditSink, RequestContext
from trustcore.service.errors import NotFoundError
from trustcore.service.tokens import hash_token, tokens_match
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import RememberMeToken, _now

logger = get_logger(__name__)

DEFAULT_LIFETIME_DAYS = 30


@dataclass(frozen=True)
class RememberMeCookie:
    value: str
    expires_at: datetime

    @property
    def series(self) -> str:
        return self.value.split(":", 1)[0]


@dataclass(frozen=True)
class RememberMeValidation:
    valid: bool
    user_id: Optional[str] = None
    new_cookie: Optional[RememberMeCookie] = None
    theft_detected: bool = False


def parse_cookie(value: Optional[str]) -> Optional[Tuple[str, str]]:
    if not value or value.count(":") != 1:
        return None
    series, validator = value.split(":", 1)
    if not series or not validator:
        return None
    return series, validator


class RememberMeService:
    """Persistent login via rotating ``series:validator`` cookies.

    The series identifies a device and never changes; the validator rotates
    on every use. Presenting a stale validator for a live series means the
    cookie was copied, so every series the user owns is revoked.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditSink,
        *,
        lifetime_days: int = DEFAULT_LIFETIME_DAYS,
    ) -> None:
        self.store = store
        self.audit = audit
        self.lifetime = timedelta(days=lifetime_days)

    def issue(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RememberMeCookie:
        series = secrets.token_hex(32)
        validator = secrets.token_hex(32)
        expires_at = _now() + self.lifetime
        self.store.create_remember_me_token(
            RememberMeToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                series=series,
                token_hash=hash_token(validator),
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        self.audit.log(
            AuditAction.AUTH_REMEMBER_ME_CREATED,
            AuditCategory.AUTHENTICATION,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"series": series[:8]},
        )
        return RememberMeCookie(value=f"{series}:{validator}", expires_at=expires_at)

    def validate(
        self,
        cookie: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RememberMeValidation:
        parsed = parse_cookie(cookie)
        if parsed is None:
            return RememberMeValidation(valid=False)
        series, validator = parsed
        token = self.store.get_remember_me_token(series)
        if token is None or token.is_revoked:
            return RememberMeValidation(valid=False)
        if token.is_expired():
            self.store.delete_remember_me_token(series)
            return RememberMeValidation(valid=False)

        if not tokens_match(validator, token.token_hash):
            revoked = self.store.revoke_user_remember_me_tokens(token.user_id)
            logger.warning(
                "remember_me_theft_detected", user_id=token.user_id, revoked=revoked
            )
            self.audit.log(
                AuditAction.AUTH_REMEMBER_ME_THEFT_DETECTED,
                AuditCategory.SECURITY,
                user_id=token.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"series": series[:8], "revokedTokens": revoked},
            )
            return RememberMeValidation(
                valid=False, user_id=token.user_id, theft_detected=True
            )

        user = self.store.get_user(token.user_id)
        if user is None or not user.is_active:
            self.store.delete_remember_me_token(series)
            return RememberMeValidation(valid=False)

        new_validator = secrets.token_hex(32)
        rotated = self.store.rotate_remember_me_token(
            series,
            token.token_hash,
            hash_token(new_validator),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if not rotated:
            logger.info("remember_me_rotation_lost", user_id=token.user_id)
            return RememberMeValidation(valid=False)
        self.audit.log(
            AuditAction.AUTH_REMEMBER_ME_USED,
            AuditCategory.AUTHENTICATION,
            user_id=token.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"series": series[:8]},
        )
        return RememberMeValidation(
            valid=True,
            user_id=token.user_id,
            new_cookie=RememberMeCookie(
                value=f"{series}:{new_validator}", expires_at=token.expires_at
            ),
        )

    def revoke(
        self,
        series: str,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        token = self.store.get_remember_me_token(series)
        if token is None:
            return False
        if token.user_id != user_id:
            raise NotFoundError("Device not found")
        if not self.store.revoke_remember_me_token(series):
            return False
        self.audit.log(
            AuditAction.AUTH_REMEMBER_ME_REVOKED,
            AuditCategory.AUTHENTICATION,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"series": series[:8]},
        )
        return True

    def revoke_all(self, user_id: str) -> int:
        return self.store.revoke_user_remember_me_tokens(user_id)

    def list_active(self, user_id: str) -> List[RememberMeToken]:
        now = _now()
        active = [
            t
            for t in self.store.list_remember_me_tokens(user_id)
            if not t.is_revoked and not t.is_expired(now)
        ]
        return sorted(active, key=lambda t: t.last_used_at, reverse=True)

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_remember_me_tokens()
        if removed:
            logger.info("remember_me_expired_cleanup", removed=removed)
        return removed


__all__ = [
    "RememberMeCookie",
    "RememberMeService",
    "RememberMeValidation",
    "parse_cookie",
]
