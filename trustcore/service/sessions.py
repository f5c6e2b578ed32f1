"""Sealed client sessions backed by persisted device records.

The session document travels in a cookie, encrypted and authenticated with
Fernet. A blob that fails authentication, carries another version, or has
outlived ``SESSION_DURATION_MS`` reads as an empty session.
"""

from __future__ import annotations

import base64
import hashlib
import json
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken

from trustcore.logging import get_logger
from trustcore.service.audit import RequestContext
from trustcore.service.impersonation import ImpersonationController
from trustcore.service.tokens import hash_token
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import (
    OrganizationContext,
    SessionData,
    User,
    _now,
    empty_session,
    epoch_ms,
)

logger = get_logger(__name__)

SESSION_DURATION_MS = 7 * 24 * 60 * 60 * 1000
SESSION_WARNING_THRESHOLD_MS = 60 * 60 * 1000
SESSION_VERSION = 1


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def derive_fernet_key(material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(material.encode()).digest())


@dataclass(frozen=True)
class SessionStatus:
    is_valid: bool
    expires_at: Optional[int]
    time_remaining_ms: int
    should_warn: bool

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "expires_at": self.expires_at,
            "time_remaining_ms": self.time_remaining_ms,
            "should_warn": self.should_warn,
        }


class SessionManager:
    def __init__(
        self,
        store: MemoryStore,
        impersonation: ImpersonationController,
        *,
        secret: str,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.impersonation = impersonation
        self._fernet = Fernet(derive_fernet_key(secret))
        self._clock = clock or epoch_ms

    # -- sealing --------------------------------------------------------------

    def seal(self, session: SessionData) -> str:
        document = {"v": SESSION_VERSION, "data": session.to_dict()}
        return self._fernet.encrypt(json.dumps(document).encode()).decode()

    def unseal(self, blob: Optional[str]) -> SessionData:
        if not blob:
            return empty_session()
        try:
            raw = self._fernet.decrypt(blob.encode())
            document = json.loads(raw)
        except (InvalidToken, ValueError):
            logger.info("session_unseal_rejected", reason="invalid_token")
            return empty_session()
        if not isinstance(document, dict) or document.get("v") != SESSION_VERSION:
            logger.info("session_unseal_rejected", reason="version_mismatch")
            return empty_session()
        try:
            return SessionData.from_dict(document.get("data") or {})
        except (KeyError, TypeError, ValueError):
            logger.info("session_unseal_rejected", reason="malformed")
            return empty_session()

    # -- lifecycle ------------------------------------------------------------

    def create(
        self,
        user_id: str,
        email: str,
        role: str,
        *,
        organization: Optional[OrganizationContext] = None,
        session_token: Optional[str] = None,
    ) -> SessionData:
        return SessionData(
            user_id=user_id,
            email=email,
            role=role,
            is_logged_in=True,
            session_created_at=self._clock(),
            organization=organization,
            csrf_token=generate_csrf_token(),
            session_token=session_token,
        )

    def _expired(self, session: SessionData) -> bool:
        return self._clock() - session.session_created_at > SESSION_DURATION_MS

    def is_valid(self, session: SessionData) -> bool:
        if not session.is_logged_in or not session.user_id or not session.email:
            return False
        return not self._expired(session)

    def get(self, blob: Optional[str]) -> SessionData:
        session = self.unseal(blob)
        if not self.is_valid(session):
            return empty_session()
        if session.session_token:
            record = self.store.get_user_session(hash_token(session.session_token))
            if record is None or record.expires_at <= _now():
                logger.info("session_device_record_missing", user_id=session.user_id)
                return empty_session()
        return session

    def refresh(self, session: SessionData, context: RequestContext) -> bool:
        """Apply lazy impersonation expiry; True when the session changed."""
        if session.impersonating is None:
            return False
        return self.impersonation.expire_if_needed(session, context)

    def resolve(self, blob: Optional[str], context: RequestContext) -> SessionData:
        session = self.get(blob)
        self.refresh(session, context)
        return session

    def extend(self, session: SessionData) -> bool:
        if not self.is_valid(session):
            return False
        session.session_created_at = self._clock()
        return True

    def status(self, session: SessionData) -> SessionStatus:
        if not self.is_valid(session):
            return SessionStatus(
                is_valid=False, expires_at=None, time_remaining_ms=0, should_warn=False
            )
        expires_at = session.session_created_at + SESSION_DURATION_MS
        remaining = max(0, expires_at - self._clock())
        return SessionStatus(
            is_valid=True,
            expires_at=expires_at,
            time_remaining_ms=remaining,
            should_warn=remaining < SESSION_WARNING_THRESHOLD_MS,
        )

    def rotate_csrf_token(self, session: SessionData) -> str:
        session.csrf_token = generate_csrf_token()
        return session.csrf_token

    def destroy(self, session: SessionData, token: Optional[str] = None) -> SessionData:
        bearer = token or session.session_token
        if bearer:
            self.store.delete_user_session(hash_token(bearer))
        return empty_session()

    def open_device_session(self, user: User, context: RequestContext) -> str:
        token = secrets.token_hex(32)
        self.store.create_user_session(
            user.id,
            hash_token(token),
            timedelta(milliseconds=SESSION_DURATION_MS),
            ip_address=context.client_ip,
            user_agent=context.user_agent,
        )
        return token


__all__ = [
    "SESSION_DURATION_MS",
    "SESSION_VERSION",
    "SESSION_WARNING_THRESHOLD_MS",
    "SessionManager",
    "SessionStatus",
    "derive_fernet_key",
    "generate_csrf_token",
]
