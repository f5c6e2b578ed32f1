from __future__ import annotations

import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditSink, RequestContext
from trustcore.service.email import EmailService
from trustcore.service.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from trustcore.service.rate_limit import RateLimiter, RateLimitRule
from trustcore.service.tokens import SecurityTokenService
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import TokenKind, User, _now

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
UNLOCK_REQUEST_MESSAGE = (
    "If your account is locked, you will receive an unlock email shortly."
)
UNLOCKED_MESSAGE = "Your account has been unlocked. You can now log in."
NOT_LOCKED_MESSAGE = "Your account is not locked. You can log in normally."
ALREADY_USED_MESSAGE = "This unlock link has already been used."


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    failed_attempts: int
    locked_until: Optional[datetime] = None
    newly_locked: bool = False

    @property
    def retry_after_seconds(self) -> int:
        if not self.locked or self.locked_until is None:
            return 0
        return max(0, math.ceil((self.locked_until - _now()).total_seconds()))


@dataclass(frozen=True)
class UnlockResult:
    unlocked: bool
    was_locked: bool
    message: str


class PasswordPolicy:
    def __init__(self, min_length: int = 8, max_length: int = 128) -> None:
        self.min_length = min_length
        self.max_length = max_length

    def problems(self, password: str) -> list[str]:
        issues = []
        if len(password) < self.min_length:
            issues.append(f"Password must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            issues.append(f"Password must be at most {self.max_length} characters")
        if not re.search(r"[A-Za-z]", password):
            issues.append("Password must contain a letter")
        if not re.search(r"\d", password):
            issues.append("Password must contain a number")
        return issues

    def enforce(self, password: str, field: str = "password") -> None:
        issues = self.problems(password or "")
        if issues:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"fields": {field: issues}},
            )


class CredentialService:
    """Password verification with failed-attempt tracking and account lockout.

    Lockout is driven by the persisted ``failed_login_attempts`` counter,
    which the store increments atomically. Once the threshold is reached the
    account stays locked until ``locked_until`` passes, an unlock link is
    redeemed, or an admin clears it; attempts during the lock neither count
    nor extend it.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditSink,
        email: EmailService,
        tokens: SecurityTokenService,
        limiter: RateLimiter,
        settings: Settings,
    ) -> None:
        self.store = store
        self.audit = audit
        self.email = email
        self.tokens = tokens
        self.limiter = limiter
        self.settings = settings
        self.max_failed_attempts = settings.max_failed_login_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_duration_minutes)
        self.policy = PasswordPolicy(min_length=settings.password_min_length)
        self.history_size = settings.password_history_size
        self.unlock_rule = RateLimitRule(
            "unlock-request",
            settings.unlock_request_rate_limit,
            settings.unlock_request_rate_window_seconds,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # -- password hashing ---------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        self.policy.enforce(password)
        digest, algo = self.hash_password(password)
        previous = self.store.get_password_record(user_id)
        if previous and previous[1] == PASSWORD_ALGO:
            self.store.push_password_history(user_id, previous[0], keep=self.history_size)
        self.store.save_password(user_id, digest, algo)
        self.store.update_user(user_id, password_changed_at=_now())

    def assert_not_reused(self, user_id: str, password: str, field: str = "password") -> None:
        """Refuse any of the last ``history_size`` passwords, the current one included."""
        record = self.store.get_password_record(user_id)
        recent = [record[0]] if record and record[1] == PASSWORD_ALGO else []
        recent += self.store.list_password_history(user_id, self.history_size - len(recent))
        for stored_hash in recent:
            try:
                reused = self._pwd_hasher.verify(stored_hash, password)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                continue
            if reused:
                message = f"Cannot reuse any of your last {self.history_size} passwords"
                raise ValidationError(message, detail={"fields": {field: [message]}})

    def check_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    # -- lockout ------------------------------------------------------------

    def check_account_locked(self, user_id: str) -> LockoutStatus:
        """Report lock state, clearing a lock whose time has passed."""
        user = self.store.get_user(user_id)
        if not user:
            return LockoutStatus(locked=False, failed_attempts=0)
        if user.locked_until is not None and not user.is_locked():
            self.store.clear_failed_logins(user_id)
            logger.info("account_lock_expired", user_id=user_id)
            return LockoutStatus(locked=False, failed_attempts=0)
        return LockoutStatus(
            locked=user.is_locked(),
            failed_attempts=user.failed_login_attempts,
            locked_until=user.locked_until,
        )

    async def record_failed_attempt(
        self, user: User, context: RequestContext
    ) -> LockoutStatus:
        outcome = self.store.record_failed_login(
            user.id,
            max_attempts=self.max_failed_attempts,
            lock_duration=self.lockout_duration,
        )
        if outcome is None:
            return LockoutStatus(locked=False, failed_attempts=0)
        attempts, locked_until, newly_locked = outcome
        if newly_locked and locked_until is not None:
            logger.warning("account_locked", user_id=user.id, attempts=attempts)
            self.audit.log(
                AuditAction.SECURITY_ACCOUNT_LOCKED,
                AuditCategory.SECURITY,
                user_id=user.id,
                context=context,
                metadata={"reason": "too_many_failed_attempts", "attempts": attempts},
            )
            await self.email.send_account_locked(user.email, locked_until)
        return LockoutStatus(
            locked=locked_until is not None and locked_until > _now(),
            failed_attempts=attempts,
            locked_until=locked_until,
            newly_locked=newly_locked,
        )

    def reset_failed_attempts(self, user_id: str) -> None:
        self.store.clear_failed_logins(user_id)

    # -- verification -------------------------------------------------------

    async def verify(self, email: str, password: str, context: RequestContext) -> User:
        """Return the user for valid credentials.

        Raises ``AuthenticationError`` for bad credentials and
        ``AccountLockedError`` while the account is locked, including the
        attempt that trips the lock.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            self._burn_dummy_verify(password)
            self.audit.log(
                AuditAction.AUTH_LOGIN_FAILURE,
                AuditCategory.AUTHENTICATION,
                context=context,
                metadata={"reason": "user_not_found", "email": (email or "").strip().lower()},
            )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        status = self.check_account_locked(user.id)
        if status.locked and status.locked_until is not None:
            logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(status.locked_until)

        if not self.check_password(user.id, password):
            lockout = await self.record_failed_attempt(user, context)
            self.audit.log(
                AuditAction.AUTH_LOGIN_FAILURE,
                AuditCategory.AUTHENTICATION,
                user_id=user.id,
                context=context,
                metadata={"reason": "invalid_password", "attempts": lockout.failed_attempts},
            )
            if lockout.locked and lockout.locked_until is not None:
                raise AccountLockedError(lockout.locked_until)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if not user.is_active:
            self.audit.log(
                AuditAction.AUTH_LOGIN_FAILURE,
                AuditCategory.AUTHENTICATION,
                user_id=user.id,
                context=context,
                metadata={"reason": "account_inactive"},
            )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        self.store.clear_failed_logins(user.id)
        self.store.update_user(user.id, last_login_at=_now())
        return user

    # -- unlock -------------------------------------------------------------

    async def request_unlock(self, email: str, context: RequestContext) -> str:
        """Email an unlock link to a locked account; same reply either way."""
        await self.limiter.enforce(self.unlock_rule, context.client_ip)
        user = self.store.get_user_by_email(email)
        if user is not None and user.is_active and user.is_locked():
            token = self.tokens.issue(
                user.id,
                TokenKind.ACCOUNT_UNLOCK,
                timedelta(minutes=self.settings.unlock_token_ttl_minutes),
            )
            await self.email.send_unlock_email(user.email, token)
            logger.info("unlock_email_issued", user_id=user.id)
        return UNLOCK_REQUEST_MESSAGE

    async def redeem_unlock_token(self, token: str, context: RequestContext) -> UnlockResult:
        redeemed = self.tokens.redeem(TokenKind.ACCOUNT_UNLOCK, token, allow_consumed=True)
        user = self.store.get_user(redeemed.token.user_id)
        if user is None:
            raise TokenInvalidError()
        if not redeemed.first_use:
            logger.info("unlock_token_replayed", user_id=user.id)
            return UnlockResult(unlocked=False, was_locked=False, message=ALREADY_USED_MESSAGE)
        if not user.is_locked():
            return UnlockResult(unlocked=False, was_locked=False, message=NOT_LOCKED_MESSAGE)
        self.store.clear_failed_logins(user.id)
        self.audit.log(
            AuditAction.SECURITY_ACCOUNT_UNLOCKED,
            AuditCategory.SECURITY,
            user_id=user.id,
            context=context,
            metadata={"method": "self_service_email"},
        )
        return UnlockResult(unlocked=True, was_locked=True, message=UNLOCKED_MESSAGE)

    def unlock_account(
        self, user_id: str, actor_user_id: str, context: RequestContext
    ) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        was_locked = user.is_locked()
        self.store.clear_failed_logins(user_id)
        self.tokens.clear(user_id, TokenKind.ACCOUNT_UNLOCK)
        self.audit.log(
            AuditAction.SECURITY_ACCOUNT_UNLOCKED,
            AuditCategory.SECURITY,
            user_id=user_id,
            context=context,
            metadata={"method": "admin", "actorUserId": actor_user_id, "wasLocked": was_locked},
        )
        return user


__all__ = [
    "CredentialService",
    "LockoutStatus",
    "PasswordPolicy",
    "UnlockResult",
    "INVALID_CREDENTIALS_MESSAGE",
    "UNLOCK_REQUEST_MESSAGE",
]
