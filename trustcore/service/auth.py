from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditSink, RequestContext
from trustcore.service.credentials import CredentialService
from trustcore.service.email import EmailService
from trustcore.service.errors import (
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    NotFoundError,
    ValidationError,
)
from trustcore.service.impersonation import assert_not_impersonating
from trustcore.service.rate_limit import RateLimiter, RateLimitRule
from trustcore.service.remember_me import RememberMeCookie, RememberMeService, parse_cookie
from trustcore.service.roles import ROLE_OWNER, ROLE_USER, RoleChecker
from trustcore.service.sessions import SessionManager, derive_fernet_key
from trustcore.service.tokens import SecurityTokenService, hash_token
from trustcore.service.two_factor import TwoFactorService
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import OrganizationContext, SessionData, TokenKind, User, _now

logger = get_logger(__name__)

REGISTERED_MESSAGE = (
    "Registration successful. Please check your email to verify your account."
)
PASSWORD_RESET_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
VERIFICATION_RESENT_MESSAGE = (
    "If an unverified account with that email exists, a verification link has been sent."
)
SESSION_COMPROMISED_MESSAGE = "Session compromised. Please login again."


@dataclass
class LoginResult:
    user: User
    requires_two_factor: bool = False
    pending_token: Optional[str] = None
    session: Optional[SessionData] = None
    remember_me: Optional[RememberMeCookie] = None
    backup_codes_remaining: Optional[int] = None
    warning: Optional[str] = None


@dataclass
class RestoreResult:
    login: Optional[LoginResult] = None
    theft_detected: bool = False


class AuthService:
    """Composes credentials, 2FA, sessions and remember-me into user flows."""

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditSink,
        email: EmailService,
        tokens: SecurityTokenService,
        limiter: RateLimiter,
        credentials: CredentialService,
        two_factor: TwoFactorService,
        remember_me: RememberMeService,
        sessions: SessionManager,
        roles: RoleChecker,
        settings: Settings,
    ) -> None:
        self.store = store
        self.audit = audit
        self.email = email
        self.tokens = tokens
        self.limiter = limiter
        self.credentials = credentials
        self.two_factor = two_factor
        self.remember_me = remember_me
        self.sessions = sessions
        self.roles = roles
        self.settings = settings
        self.login_rule = RateLimitRule(
            "login", settings.login_rate_limit, settings.login_rate_window_seconds
        )
        self.register_rule = RateLimitRule(
            "register", settings.register_rate_limit, settings.register_rate_window_seconds
        )
        self.forgot_password_rule = RateLimitRule(
            "forgot-password",
            settings.forgot_password_rate_limit,
            settings.forgot_password_rate_window_seconds,
        )
        self.resend_verification_rule = RateLimitRule(
            "resend-verification",
            settings.forgot_password_rate_limit,
            settings.forgot_password_rate_window_seconds,
        )
        self.two_factor_rule = RateLimitRule(
            "2fa-validate", settings.two_factor_rate_limit, settings.two_factor_rate_window_seconds
        )
        self._pending_ttl = settings.pending_two_factor_ttl_minutes * 60
        self._pending = Fernet(derive_fernet_key(settings.session_secret + ":2fa-pending"))

    # -- registration -------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        context: RequestContext,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        organization_name: Optional[str] = None,
    ) -> User:
        await self.limiter.enforce(self.register_rule, context.client_ip)
        if self.store.get_user_by_email(email):
            raise ConflictError("A user with this email already exists")
        self.credentials.policy.enforce(password)
        digest, algo = self.credentials.hash_password(password)
        verify_first = self.settings.require_email_verification

        try:
            with self.store.transaction():
                user = self.store.create_user(
                    email,
                    username=username,
                    first_name=first_name,
                    last_name=last_name,
                    email_verified=not verify_first,
                )
                self.store.save_password(user.id, digest, algo)
                self.store.update_user(user.id, password_changed_at=_now())
                self.store.grant_role(user.id, ROLE_USER)
                if organization_name:
                    org = self.store.create_organization(organization_name)
                    self.store.grant_role(user.id, ROLE_OWNER, org.id)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise ConflictError("A user with this email already exists") from exc
            raise ConflictError(exc.message, detail=exc.detail) from exc

        self.audit.log(
            AuditAction.AUTH_REGISTER,
            AuditCategory.AUTHENTICATION,
            user_id=user.id,
            context=context,
            metadata={"withOrganization": bool(organization_name)},
        )
        if verify_first:
            await self._send_verification(user)
        logger.info("user_registered", user_id=user.id)
        return user

    async def _send_verification(self, user: User) -> None:
        token = self.tokens.issue(
            user.id,
            TokenKind.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        await self.email.send_email_verification(user.email, token)

    async def verify_email(self, token: str, context: Optional[RequestContext] = None) -> User:
        redeemed = self.tokens.redeem(TokenKind.EMAIL_VERIFICATION, token)
        user = self.store.get_user(redeemed.token.user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ValidationError("Email is already verified")
        user = self.store.update_user(user.id, email_verified=True, email_verified_at=_now()) or user
        self.audit.log(
            AuditAction.AUTH_EMAIL_VERIFIED,
            AuditCategory.AUTHENTICATION,
            user_id=user.id,
            context=context,
        )
        return user

    async def resend_verification(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ValidationError("Email is already verified")
        await self._send_verification(user)

    async def resend_verification_for_email(self, email: str, context: RequestContext) -> str:
        await self.limiter.enforce(self.resend_verification_rule, context.client_ip)
        user = self.store.get_user_by_email(email)
        if user is not None and user.is_active and not user.email_verified:
            await self.resend_verification(user.id)
        return VERIFICATION_RESENT_MESSAGE

    # -- login --------------------------------------------------------------

    def _organization_for(self, user_id: str) -> Optional[OrganizationContext]:
        for grant in self.store.list_role_grants(user_id):
            if grant.organization_id is None:
                continue
            org = self.store.get_organization(grant.organization_id)
            if org is not None:
                return OrganizationContext(
                    id=org.id, name=org.name, slug=org.slug, role=grant.role_name
                )
        return None

    async def _establish(
        self,
        user: User,
        context: RequestContext,
        *,
        remember_me: bool,
        method: str,
    ) -> LoginResult:
        known_ips = {s.ip_address for s in self.store.list_user_sessions(user.id)}
        token = self.sessions.open_device_session(user, context)
        session = self.sessions.create(
            user.id,
            user.email,
            self.roles.highest_platform_role(user.id),
            organization=self._organization_for(user.id),
            session_token=token,
        )
        cookie = None
        if remember_me:
            cookie = self.remember_me.issue(user.id, context.client_ip, context.user_agent)
        self.audit.log(
            AuditAction.AUTH_LOGIN_SUCCESS,
            AuditCategory.AUTHENTICATION,
            user_id=user.id,
            context=context,
            metadata={"method": method, "rememberMe": remember_me},
        )
        if known_ips and context.client_ip not in known_ips:
            await self.email.send_new_device_login(
                user.email, context.client_ip, context.user_agent
            )
        return LoginResult(user=user, session=session, remember_me=cookie)

    def _issue_pending_token(self, user: User, remember_me: bool) -> str:
        payload = json.dumps({"user_id": user.id, "remember_me": remember_me})
        return self._pending.encrypt(payload.encode()).decode()

    def _read_pending_token(self, pending_token: str) -> tuple[str, bool]:
        try:
            raw = self._pending.decrypt(pending_token.encode(), ttl=self._pending_ttl)
            payload = json.loads(raw)
            return str(payload["user_id"]), bool(payload.get("remember_me"))
        except (InvalidToken, ValueError, KeyError, TypeError) as exc:
            raise AuthenticationError("Two-factor session expired. Please login again.") from exc

    async def login(
        self,
        email: str,
        password: str,
        remember_me: bool,
        context: RequestContext,
    ) -> LoginResult:
        await self.limiter.enforce(self.login_rule, context.client_ip)
        user = await self.credentials.verify(email, password, context)
        if self.settings.require_email_verification and not user.email_verified:
            self.audit.log(
                AuditAction.AUTH_LOGIN_FAILURE,
                AuditCategory.AUTHENTICATION,
                user_id=user.id,
                context=context,
                metadata={"reason": "email_not_verified"},
            )
            raise EmailNotVerifiedError()
        if user.two_factor_enabled:
            logger.info("login_two_factor_required", user_id=user.id)
            return LoginResult(
                user=user,
                requires_two_factor=True,
                pending_token=self._issue_pending_token(user, remember_me),
            )
        return await self._establish(user, context, remember_me=remember_me, method="password")

    async def complete_two_factor_login(
        self,
        pending_token: str,
        code: str,
        is_backup_code: bool,
        context: RequestContext,
    ) -> LoginResult:
        await self.limiter.enforce(self.two_factor_rule, context.client_ip)
        user_id, remember_me = self._read_pending_token(pending_token)
        user = self.store.get_user(user_id)
        if user is None or not user.is_active or not user.two_factor_enabled:
            raise AuthenticationError("Two-factor session expired. Please login again.")

        if not self.two_factor.verify_code(user, code, is_backup_code=is_backup_code):
            self.audit.log(
                AuditAction.AUTH_2FA_FAILURE,
                AuditCategory.AUTHENTICATION,
                user_id=user.id,
                context=context,
                metadata={"method": "backup_code" if is_backup_code else "totp"},
            )
            raise AuthenticationError("Invalid code")

        remaining = None
        warning = None
        if is_backup_code:
            remaining = self.two_factor.remaining_backup_codes(user.id)
            self.audit.log(
                AuditAction.AUTH_2FA_BACKUP_USED,
                AuditCategory.SECURITY,
                user_id=user.id,
                context=context,
                metadata={"remainingCodes": remaining},
            )
            if remaining <= self.settings.backup_code_warning_threshold:
                warning = (
                    f"You have {remaining} backup codes remaining. "
                    "Consider generating new ones."
                )
        self.audit.log(
            AuditAction.AUTH_2FA_SUCCESS,
            AuditCategory.AUTHENTICATION,
            user_id=user.id,
            context=context,
            metadata={"method": "backup_code" if is_backup_code else "totp"},
        )
        result = await self._establish(
            user, context, remember_me=remember_me, method="two_factor"
        )
        result.backup_codes_remaining = remaining
        result.warning = warning
        return result

    async def restore_from_remember_me(
        self, cookie: Optional[str], context: RequestContext
    ) -> RestoreResult:
        validation = self.remember_me.validate(cookie, context.client_ip, context.user_agent)
        if validation.theft_detected:
            if validation.user_id:
                self.store.delete_user_sessions(validation.user_id)
            return RestoreResult(theft_detected=True)
        if not validation.valid or validation.user_id is None:
            return RestoreResult()
        user = self.store.get_user(validation.user_id)
        if user is None:
            return RestoreResult()
        token = self.sessions.open_device_session(user, context)
        session = self.sessions.create(
            user.id,
            user.email,
            self.roles.highest_platform_role(user.id),
            organization=self._organization_for(user.id),
            session_token=token,
        )
        self.audit.log(
            AuditAction.AUTH_LOGIN_SUCCESS,
            AuditCategory.AUTHENTICATION,
            user_id=user.id,
            context=context,
            metadata={"method": "remember_me"},
        )
        return RestoreResult(
            login=LoginResult(user=user, session=session, remember_me=validation.new_cookie)
        )

    async def logout(
        self,
        session: SessionData,
        context: RequestContext,
        remember_me_cookie: Optional[str] = None,
    ) -> SessionData:
        if session.is_logged_in:
            actor = (
                session.impersonating.original_user_id
                if session.impersonating
                else session.user_id
            )
            self.audit.log(
                AuditAction.AUTH_LOGOUT,
                AuditCategory.AUTHENTICATION,
                user_id=actor,
                context=context,
            )
            parsed = parse_cookie(remember_me_cookie)
            if parsed is not None:
                token = self.store.get_remember_me_token(parsed[0])
                if token is not None and token.user_id == actor:
                    self.remember_me.revoke(
                        parsed[0], actor, context.client_ip, context.user_agent
                    )
        return self.sessions.destroy(session)

    # -- passwords ----------------------------------------------------------

    async def request_password_reset(self, email: str, context: RequestContext) -> str:
        await self.limiter.enforce(self.forgot_password_rule, context.client_ip)
        user = self.store.get_user_by_email(email)
        if user is not None and user.is_active:
            token = self.tokens.issue(
                user.id,
                TokenKind.PASSWORD_RESET,
                timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            await self.email.send_password_reset(user.email, token)
            self.audit.log(
                AuditAction.SECURITY_PASSWORD_RESET_REQUESTED,
                AuditCategory.SECURITY,
                user_id=user.id,
                context=context,
            )
        else:
            logger.info("password_reset_unknown_email")
        return PASSWORD_RESET_MESSAGE

    async def reset_password(self, token: str, password: str, context: RequestContext) -> User:
        self.credentials.policy.enforce(password)
        pending = self.tokens.lookup(TokenKind.PASSWORD_RESET, token)
        if pending is not None:
            # Checked before redeeming so a refused password leaves the link usable
            self.credentials.assert_not_reused(pending.user_id, password)
        redeemed = self.tokens.redeem(TokenKind.PASSWORD_RESET, token)
        user = self.store.get_user(redeemed.token.user_id)
        if user is None:
            raise NotFoundError("User not found")
        self.credentials.set_password(user.id, password)
        self.store.clear_failed_logins(user.id)
        self.store.delete_user_sessions(user.id)
        self.remember_me.revoke_all(user.id)
        self.audit.log(
            AuditAction.SECURITY_PASSWORD_CHANGED,
            AuditCategory.SECURITY,
            user_id=user.id,
            context=context,
            metadata={"method": "reset"},
        )
        await self.email.send_password_changed(user.email)
        logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(
        self,
        session: SessionData,
        current_password: str,
        new_password: str,
        context: RequestContext,
    ) -> None:
        assert_not_impersonating(session)
        if not session.is_logged_in:
            raise AuthenticationError("Authentication required")
        user = self.store.get_user(session.user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not self.credentials.check_password(user.id, current_password):
            raise AuthenticationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "New password must differ from the current password",
                detail={"fields": {"new_password": ["Must differ from the current password"]}},
            )
        self.credentials.policy.enforce(new_password, field="new_password")
        self.credentials.assert_not_reused(user.id, new_password, field="new_password")
        self.credentials.set_password(user.id, new_password)

        keep = hash_token(session.session_token) if session.session_token else None
        for record in self.store.list_user_sessions(user.id):
            if record.token_hash != keep:
                self.store.delete_user_session(record.token_hash)
        self.remember_me.revoke_all(user.id)
        self.audit.log(
            AuditAction.SECURITY_PASSWORD_CHANGED,
            AuditCategory.SECURITY,
            user_id=user.id,
            context=context,
            metadata={"method": "change"},
        )
        await self.email.send_password_changed(user.email)

    def revoke_all_sessions(self, user_id: str, context: Optional[RequestContext] = None) -> int:
        sessions = self.store.delete_user_sessions(user_id)
        tokens = self.remember_me.revoke_all(user_id)
        self.audit.log(
            AuditAction.SECURITY_ALL_SESSIONS_REVOKED,
            AuditCategory.SECURITY,
            user_id=user_id,
            context=context,
            metadata={"sessions": sessions, "rememberMeTokens": tokens},
        )
        return sessions + tokens


__all__ = [
    "AuthService",
    "LoginResult",
    "PASSWORD_RESET_MESSAGE",
    "REGISTERED_MESSAGE",
    "RestoreResult",
    "SESSION_COMPROMISED_MESSAGE",
]
