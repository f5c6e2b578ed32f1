from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from trustcore.api.error_handling import error_response
from trustcore.api.schemas import (
    AuditEventResponse,
    ChangePasswordRequest,
    DeviceResponse,
    Envelope,
    ForgotPasswordRequest,
    ImpersonateRequest,
    LoginRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RoleChangeRequest,
    SessionResponse,
    TokenRequest,
    TwoFactorCodeRequest,
    TwoFactorValidateRequest,
    UnlockRequest,
)
from trustcore.logging import get_logger
from trustcore.service.audit import AuditAction, AuditCategory, AuditQuery, RequestContext
from trustcore.service.auth import (
    REGISTERED_MESSAGE,
    SESSION_COMPROMISED_MESSAGE,
    LoginResult,
)
from trustcore.service.errors import AuthenticationError, AuthorizationError, ServerError
from trustcore.service.impersonation import assert_not_impersonating
from trustcore.service.remember_me import RememberMeCookie, parse_cookie
from trustcore.service.roles import role_capabilities
from trustcore.service.runtime import Runtime, get_runtime
from trustcore.service.sessions import SESSION_DURATION_MS
from trustcore.storage.models import SessionData

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


# -- request plumbing ------------------------------------------------------


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return "unknown"


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def _ok(data=None) -> Envelope:
    return Envelope(status="ok", data=data)


def _set_session_cookies(runtime: Runtime, response: Response, session: SessionData) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        runtime.sessions.seal(session),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=SESSION_DURATION_MS // 1000,
        path="/",
    )
    if session.csrf_token:
        response.set_cookie(
            settings.csrf_cookie_name,
            session.csrf_token,
            httponly=False,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=SESSION_DURATION_MS // 1000,
            path="/",
        )


def _clear_session_cookies(runtime: Runtime, response: Response) -> None:
    response.delete_cookie(runtime.settings.session_cookie_name, path="/")
    response.delete_cookie(runtime.settings.csrf_cookie_name, path="/")


def _set_remember_cookie(runtime: Runtime, response: Response, cookie: RememberMeCookie) -> None:
    response.set_cookie(
        runtime.settings.remember_me_cookie_name,
        cookie.value,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        expires=cookie.expires_at,
        path="/",
    )


def _session_payload(runtime: Runtime, session: SessionData) -> dict:
    return SessionResponse(
        user_id=session.user_id,
        email=session.email,
        role=session.role,
        is_logged_in=session.is_logged_in,
        csrf_token=session.csrf_token,
        organization=session.organization.to_dict() if session.organization else None,
        impersonating=session.impersonating is not None,
        impersonation_minutes_remaining=runtime.impersonation.time_remaining(session),
        capabilities=role_capabilities(session.role) if session.is_logged_in else {},
    ).model_dump()


def _apply_login(runtime: Runtime, response: Response, result: LoginResult) -> dict:
    if result.session is None:
        raise ServerError("Login completed without a session")
    _set_session_cookies(runtime, response, result.session)
    if result.remember_me is not None:
        _set_remember_cookie(runtime, response, result.remember_me)
    payload = _session_payload(runtime, result.session)
    payload["requires_two_factor"] = False
    if result.backup_codes_remaining is not None:
        payload["backup_codes_remaining"] = result.backup_codes_remaining
    if result.warning:
        payload["warning"] = result.warning
    return payload


async def get_session(request: Request, response: Response) -> SessionData:
    """Unseal the session cookie and apply lazy impersonation expiry."""
    runtime = get_runtime()
    session = runtime.sessions.get(request.cookies.get(runtime.settings.session_cookie_name))
    if runtime.sessions.refresh(session, request_context(request)):
        _set_session_cookies(runtime, response, session)
        # Error responses are built fresh, so they re-seal through this hook
        request.state.impersonation_expired = True
        request.state.reseal_session = lambda resp: _set_session_cookies(runtime, resp, session)
    return session


async def require_session(session: SessionData = Depends(get_session)) -> SessionData:
    if not session.is_logged_in:
        raise AuthenticationError("Authentication required")
    return session


async def require_admin(session: SessionData = Depends(require_session)) -> SessionData:
    if not get_runtime().roles.is_platform_admin(session.user_id):
        raise AuthorizationError("Admin access required")
    return session


# -- authentication --------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account; optionally a new organization owned by it."""
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.password,
        request_context(request),
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
        organization_name=body.organization_name,
    )
    message = (
        REGISTERED_MESSAGE
        if runtime.settings.require_email_verification
        else "Registration successful."
    )
    return _ok({"user_id": user.id, "email": user.email, "message": message})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify credentials.

    Accounts with 2FA receive a short-lived ``pending_token`` instead of a
    session; it is exchanged at ``/auth/2fa/validate``.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, body.remember_me, request_context(request)
    )
    if result.requires_two_factor:
        return _ok({"requires_two_factor": True, "pending_token": result.pending_token})
    return _ok(_apply_login(runtime, response, result))


@router.post("/auth/2fa/validate", response_model=Envelope, tags=["auth"])
async def validate_two_factor(body: TwoFactorValidateRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.complete_two_factor_login(
        body.pending_token, body.code, body.is_backup_code, request_context(request)
    )
    return _ok(_apply_login(runtime, response, result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, session: SessionData = Depends(get_session)
):
    runtime = get_runtime()
    await runtime.auth.logout(
        session,
        request_context(request),
        request.cookies.get(runtime.settings.remember_me_cookie_name),
    )
    _clear_session_cookies(runtime, response)
    response.delete_cookie(runtime.settings.remember_me_cookie_name, path="/")
    return _ok({"logged_out": True})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    request: Request, response: Response, session: SessionData = Depends(get_session)
):
    """Return the caller's session, restoring it from a remember-me cookie when needed."""
    runtime = get_runtime()
    if session.is_logged_in:
        return _ok(_session_payload(runtime, session))
    remember_cookie = request.cookies.get(runtime.settings.remember_me_cookie_name)
    if not remember_cookie:
        return _ok(_session_payload(runtime, session))

    restored = await runtime.auth.restore_from_remember_me(
        remember_cookie, request_context(request)
    )
    if restored.theft_detected:
        failure = error_response(
            401,
            SESSION_COMPROMISED_MESSAGE,
            {"reason": "remember_me_theft"},
            code="AUTHENTICATION_ERROR",
        )
        _clear_session_cookies(runtime, failure)
        failure.delete_cookie(runtime.settings.remember_me_cookie_name, path="/")
        return failure
    if restored.login is None:
        response.delete_cookie(runtime.settings.remember_me_cookie_name, path="/")
        return _ok(_session_payload(runtime, session))
    return _ok(_apply_login(runtime, response, restored.login))


@router.get("/auth/session-status", response_model=Envelope, tags=["auth"])
async def session_status(session: SessionData = Depends(get_session)):
    runtime = get_runtime()
    payload = runtime.sessions.status(session).to_dict()
    payload["impersonation_minutes_remaining"] = runtime.impersonation.time_remaining(session)
    return _ok(payload)


@router.post("/auth/extend-session", response_model=Envelope, tags=["auth"])
async def extend_session(response: Response, session: SessionData = Depends(require_session)):
    runtime = get_runtime()
    if not runtime.sessions.extend(session):
        raise AuthenticationError("Session expired")
    _set_session_cookies(runtime, response, session)
    return _ok(runtime.sessions.status(session).to_dict())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(session: SessionData = Depends(require_session)):
    runtime = get_runtime()
    user = runtime.store.get_user(session.user_id)
    if user is None:
        raise AuthenticationError("Authentication required")
    grants = runtime.store.list_role_grants(user.id)
    profile = {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "email_verified": user.email_verified,
        "two_factor_enabled": user.two_factor_enabled,
        "role": session.role,
        "capabilities": role_capabilities(session.role),
        "roles": [
            {"role_name": g.role_name, "organization_id": g.organization_id} for g in grants
        ],
        "organization": session.organization.to_dict() if session.organization else None,
        "impersonating": session.impersonating is not None,
    }
    if user.two_factor_enabled:
        profile["backup_codes_remaining"] = runtime.two_factor.remaining_backup_codes(user.id)
    if session.impersonating is not None:
        profile["impersonated_by"] = session.impersonating.original_email
    return _ok(profile)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.auth.request_password_reset(body.email, request_context(request))
    return _ok({"message": message})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.password, request_context(request))
    return _ok({"message": "Password has been reset. Please log in with your new password."})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest, request: Request):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token, request_context(request))
    return _ok({"email": user.email, "email_verified": True, "message": "Email verified successfully"})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.auth.resend_verification_for_email(
        body.email, request_context(request)
    )
    return _ok({"message": message})


@router.post("/auth/request-unlock", response_model=Envelope, tags=["auth"])
async def request_unlock(body: UnlockRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.credentials.request_unlock(body.email, request_context(request))
    return _ok({"message": message})


@router.post("/auth/verify-unlock", response_model=Envelope, tags=["auth"])
async def verify_unlock(body: TokenRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.credentials.redeem_unlock_token(body.token, request_context(request))
    return _ok(
        {"unlocked": result.unlocked, "was_locked": result.was_locked, "message": result.message}
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    session: SessionData = Depends(require_session),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        session, body.current_password, body.new_password, request_context(request)
    )
    return _ok({"message": "Password changed successfully"})


# -- two-factor ------------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(request: Request, session: SessionData = Depends(require_session)):
    runtime = get_runtime()
    setup = await runtime.two_factor.setup(session, request_context(request))
    return _ok(setup.to_dict())


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorCodeRequest,
    request: Request,
    session: SessionData = Depends(require_session),
):
    runtime = get_runtime()
    await runtime.two_factor.verify_setup(session, body.code, request_context(request))
    return _ok({"enabled": True, "message": "Two-factor authentication enabled"})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    session: SessionData = Depends(require_session),
):
    runtime = get_runtime()
    csrf_token = await runtime.two_factor.disable(session, body.code, request_context(request))
    _set_session_cookies(runtime, response, session)
    return _ok({"disabled": True, "csrf_token": csrf_token})


# -- devices ---------------------------------------------------------------


@router.get("/users/devices", response_model=Envelope, tags=["users"])
async def list_devices(request: Request, session: SessionData = Depends(require_session)):
    runtime = get_runtime()
    parsed = parse_cookie(request.cookies.get(runtime.settings.remember_me_cookie_name))
    current_series = parsed[0] if parsed else None
    devices = [
        DeviceResponse(
            series=token.series,
            ip_address=token.ip_address,
            user_agent=token.user_agent,
            last_used_at=token.last_used_at.isoformat(),
            created_at=token.created_at.isoformat(),
            expires_at=token.expires_at.isoformat(),
            current=token.series == current_series,
        ).model_dump()
        for token in runtime.remember_me.list_active(session.user_id)
    ]
    return _ok({"devices": devices})


@router.delete("/users/devices/{series}", response_model=Envelope, tags=["users"])
async def revoke_device(
    request: Request,
    series: str = Path(..., min_length=1, max_length=128),
    session: SessionData = Depends(require_session),
):
    runtime = get_runtime()
    context = request_context(request)
    revoked = runtime.remember_me.revoke(
        series, session.user_id, context.client_ip, context.user_agent
    )
    return _ok({"revoked": revoked})


# -- admin -----------------------------------------------------------------


@router.post("/admin/impersonate", response_model=Envelope, tags=["admin"])
async def impersonate(
    body: ImpersonateRequest,
    request: Request,
    response: Response,
    session: SessionData = Depends(require_session),
):
    runtime = get_runtime()
    runtime.impersonation.start(session, body.user_id, request_context(request))
    _set_session_cookies(runtime, response, session)
    return _ok(_session_payload(runtime, session))


@router.post("/admin/exit-impersonation", response_model=Envelope, tags=["admin"])
async def exit_impersonation(
    request: Request, response: Response, session: SessionData = Depends(require_session)
):
    runtime = get_runtime()
    if session.impersonating is None and getattr(request.state, "impersonation_expired", False):
        # Already ended by lazy expiry on this request
        return _ok(_session_payload(runtime, session))
    runtime.impersonation.exit(session, request_context(request))
    _set_session_cookies(runtime, response, session)
    return _ok(_session_payload(runtime, session))


@router.get("/admin/audit-logs", response_model=Envelope, tags=["admin"])
async def audit_logs(
    session: SessionData = Depends(require_session),
    user_id: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    category: Optional[str] = Query(None, max_length=32),
    organization_id: Optional[str] = Query(None, max_length=128),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    assert_not_impersonating(session)
    runtime = get_runtime()
    if not runtime.roles.is_platform_admin(session.user_id):
        raise AuthorizationError("Admin access required")
    events, total = runtime.audit.query(
        AuditQuery(
            user_id=user_id,
            action=action,
            category=category,
            organization_id=organization_id,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
    )
    items = [
        AuditEventResponse(
            id=e.id,
            action=e.action,
            category=e.category,
            user_id=e.user_id,
            organization_id=e.organization_id,
            ip_address=e.ip_address,
            user_agent=e.user_agent,
            metadata=e.metadata,
            created_at=e.created_at.isoformat(),
        ).model_dump()
        for e in events
    ]
    return _ok({"events": items, "total": total, "limit": limit, "offset": offset})


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    request: Request,
    user_id: str = Path(..., max_length=128),
    admin: SessionData = Depends(require_admin),
):
    runtime = get_runtime()
    runtime.credentials.unlock_account(user_id, admin.user_id, request_context(request))
    return _ok({"user_id": user_id, "unlocked": True})


@router.post("/admin/users/{user_id}/reset-2fa", response_model=Envelope, tags=["admin"])
async def admin_reset_two_factor(
    request: Request,
    user_id: str = Path(..., max_length=128),
    admin: SessionData = Depends(require_admin),
):
    runtime = get_runtime()
    runtime.two_factor.admin_reset(user_id, admin.user_id, request_context(request))
    return _ok({"user_id": user_id, "two_factor_enabled": False})


@router.post("/admin/users/{user_id}/roles", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_grant_role(
    body: RoleChangeRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    admin: SessionData = Depends(require_admin),
):
    runtime = get_runtime()
    grant = runtime.safeguards.grant_role(
        user_id, body.role_name, body.organization_id, admin.user_id, request_context(request)
    )
    return _ok(
        {
            "id": grant.id,
            "user_id": grant.user_id,
            "role_name": grant.role_name,
            "organization_id": grant.organization_id,
        }
    )


@router.delete("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def admin_remove_role(
    request: Request,
    user_id: str = Path(..., max_length=128),
    role_name: str = Query(..., min_length=1, max_length=64),
    organization_id: Optional[str] = Query(None, max_length=128),
    admin: SessionData = Depends(require_admin),
):
    runtime = get_runtime()
    removed = runtime.safeguards.remove_role(
        user_id, role_name, organization_id, admin.user_id, request_context(request)
    )
    return _ok({"removed": removed})


@router.get("/admin/emails/circuit-breaker", response_model=Envelope, tags=["admin"])
async def email_breaker_state(admin: SessionData = Depends(require_admin)):
    runtime = get_runtime()
    snapshot = runtime.email_breaker.get_state()
    return _ok({"name": runtime.email_breaker.name, **snapshot.to_dict()})


@router.post("/admin/emails/circuit-breaker/reset", response_model=Envelope, tags=["admin"])
async def email_breaker_reset(request: Request, admin: SessionData = Depends(require_admin)):
    runtime = get_runtime()
    previous = runtime.email_breaker.get_state()
    snapshot = runtime.email_breaker.reset()
    runtime.audit.log(
        AuditAction.ADMIN_CIRCUIT_BREAKER_RESET,
        AuditCategory.ADMIN,
        user_id=admin.user_id,
        context=request_context(request),
        metadata={"breaker": runtime.email_breaker.name, "previousState": previous.state.value},
    )
    return _ok({"name": runtime.email_breaker.name, **snapshot.to_dict()})
