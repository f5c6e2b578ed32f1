from __future__ import annotations

import base64
import re
import secrets
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional

import pyotp
import qrcode
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditSink, RequestContext
from trustcore.service.email import EmailService
from trustcore.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from trustcore.service.impersonation import assert_not_impersonating
from trustcore.service.rate_limit import RateLimiter, RateLimitRule
from trustcore.service.roles import RoleChecker
from trustcore.service.sessions import generate_csrf_token
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import SessionData, User

logger = get_logger(__name__)

BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8

_TOTP_RE = re.compile(r"^\d{6}$")
_BACKUP_RE = re.compile(rf"^[{BACKUP_CODE_ALPHABET}]{{{BACKUP_CODE_LENGTH}}}$")


def normalize_backup_code(code: str) -> str:
    return (code or "").upper().replace(" ", "").replace("-", "")


def is_totp_format(code: str) -> bool:
    return bool(_TOTP_RE.match((code or "").strip()))


def is_backup_code_format(code: str) -> bool:
    return bool(_BACKUP_RE.match(normalize_backup_code(code)))


def generate_backup_codes(count: int = 10) -> List[str]:
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def qr_code_data_url(uri: str) -> str:
    img = qrcode.make(uri)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    qr_code_data_url: str
    manual_entry_key: str
    backup_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "secret": self.secret,
            "qr_code": self.qr_code_data_url,
            "manual_entry_key": self.manual_entry_key,
            "backup_codes": list(self.backup_codes),
        }


class TwoFactorService:
    """TOTP enrolment, verification and backup codes.

    Secrets are stored Fernet-encrypted by the store and only become active
    once a code generated from them has been verified.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditSink,
        email: EmailService,
        limiter: RateLimiter,
        roles: RoleChecker,
        settings: Settings,
    ) -> None:
        self.store = store
        self.audit = audit
        self.email = email
        self.limiter = limiter
        self.roles = roles
        self.issuer = settings.two_factor_issuer
        self.backup_code_count = settings.backup_code_count
        self.setup_rule = RateLimitRule(
            "2fa-setup", settings.two_factor_rate_limit, settings.two_factor_rate_window_seconds
        )
        self.disable_rule = RateLimitRule(
            "2fa-disable", settings.two_factor_rate_limit, settings.two_factor_rate_window_seconds
        )
        # Backup codes carry ~40 bits of entropy and are verified in a loop
        self._code_hasher = PasswordHasher(
            time_cost=1, memory_cost=8 * 1024, parallelism=1, type=Type.ID
        )

    def _require_user(self, session: SessionData) -> User:
        if not session.is_logged_in:
            raise AuthenticationError("Authentication required")
        user = self.store.get_user(session.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _hash_code(self, code: str) -> str:
        return self._code_hasher.hash(normalize_backup_code(code))

    def verify_totp(self, secret: str, code: str) -> bool:
        if not secret or not is_totp_format(code):
            return False
        return pyotp.TOTP(secret).verify(code.strip(), valid_window=1)

    async def setup(self, session: SessionData, context: RequestContext) -> TwoFactorSetup:
        await self.limiter.enforce(self.setup_rule, context.client_ip)
        assert_not_impersonating(session)
        user = self._require_user(session)
        if user.two_factor_enabled:
            raise ConflictError("2FA is already enabled")

        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        codes = generate_backup_codes(self.backup_code_count)
        with self.store.transaction():
            self.store.set_two_factor_secret(user.id, secret)
            self.store.replace_backup_codes(user.id, [self._hash_code(c) for c in codes])
        logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(
            secret=secret,
            qr_code_data_url=qr_code_data_url(uri),
            manual_entry_key=secret,
            backup_codes=codes,
        )

    async def verify_setup(
        self, session: SessionData, code: str, context: RequestContext
    ) -> User:
        assert_not_impersonating(session)
        user = self._require_user(session)
        if user.two_factor_enabled:
            raise ConflictError("2FA is already enabled")
        secret = self.store.get_two_factor_secret(user.id)
        if not secret:
            raise ValidationError("2FA setup not started")
        if not self.verify_totp(secret, code):
            logger.info("two_factor_setup_code_rejected", user_id=user.id)
            raise AuthenticationError("Invalid code")
        enabled = self.store.enable_two_factor(user.id) or user
        self.audit.log(
            AuditAction.AUTH_2FA_ENABLED,
            AuditCategory.SECURITY,
            user_id=user.id,
            context=context,
        )
        await self.email.send_two_factor_enabled(user.email)
        return enabled

    async def disable(self, session: SessionData, code: str, context: RequestContext) -> str:
        """Turn 2FA off and return the session's new CSRF token."""
        await self.limiter.enforce(self.disable_rule, context.client_ip)
        assert_not_impersonating(session)
        if is_totp_format(code):
            is_backup = False
        elif is_backup_code_format(code):
            is_backup = True
        else:
            raise ValidationError(
                "Invalid code format",
                detail={"fields": {"code": ["Enter a 6-digit code or a backup code"]}},
            )
        user = self._require_user(session)
        if self.roles.is_platform_admin(user.id):
            raise AuthorizationError("Admins cannot disable 2FA")
        if not user.two_factor_enabled:
            raise ValidationError("2FA is not enabled")
        if not self.verify_code(user, code, is_backup_code=is_backup):
            self.audit.log(
                AuditAction.AUTH_2FA_FAILURE,
                AuditCategory.AUTHENTICATION,
                user_id=user.id,
                context=context,
                metadata={"reason": "disable_invalid_code"},
            )
            raise AuthenticationError("Invalid code")
        self.store.clear_two_factor(user.id)
        self.audit.log(
            AuditAction.AUTH_2FA_DISABLED,
            AuditCategory.SECURITY,
            user_id=user.id,
            context=context,
            metadata={"method": "backup_code" if is_backup else "totp"},
        )
        await self.email.send_two_factor_disabled(user.email)
        session.csrf_token = generate_csrf_token()
        return session.csrf_token

    def verify_code(self, user: User, code: str, *, is_backup_code: bool = False) -> bool:
        if not is_backup_code:
            secret = self.store.get_two_factor_secret(user.id)
            return bool(secret) and self.verify_totp(secret, code)
        normalized = normalize_backup_code(code)
        if not _BACKUP_RE.match(normalized):
            return False
        for record in self.store.list_backup_codes(user.id):
            try:
                self._code_hasher.verify(record.code_hash, normalized)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                continue
            # A concurrent redemption of the same code loses here
            return self.store.mark_backup_code_used(user.id, record.id)
        return False

    def remaining_backup_codes(self, user_id: str) -> int:
        return len(self.store.list_backup_codes(user_id))

    def admin_reset(
        self, user_id: str, actor_user_id: str, context: Optional[RequestContext] = None
    ) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        was_enabled = user.two_factor_enabled
        self.store.clear_two_factor(user_id)
        logger.warning("two_factor_admin_reset", user_id=user_id, actor_user_id=actor_user_id)
        self.audit.log(
            AuditAction.ADMIN_2FA_RESET,
            AuditCategory.ADMIN,
            user_id=actor_user_id,
            context=context,
            metadata={"targetUserId": user_id, "wasEnabled": was_enabled},
        )
        return self.store.get_user(user_id) or user


__all__ = [
    "BACKUP_CODE_ALPHABET",
    "TwoFactorService",
    "TwoFactorSetup",
    "generate_backup_codes",
    "is_backup_code_format",
    "is_totp_format",
    "normalize_backup_code",
    "qr_code_data_url",
]
