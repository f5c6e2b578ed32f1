from __future__ import annotations

import base64
import copy
import hashlib
import json
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields, is_dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from trustcore.logging import get_logger
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import (
    AuditEvent,
    BackupCode,
    Organization,
    RememberMeToken,
    RoleGrant,
    SecurityToken,
    TokenKind,
    User,
    UserSession,
    _now,
)

_USER_UPDATABLE = frozenset(
    {
        "username",
        "first_name",
        "last_name",
        "is_active",
        "email_verified",
        "email_verified_at",
        "locked_until",
        "failed_login_attempts",
        "last_login_at",
        "password_changed_at",
    }
)


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``.

    Every read and write runs under one re-entrant lock, which gives the
    atomic primitives the auth core relies on: counter increments,
    first-caller-wins token consumption and multi-record transactions.
    """

    def __init__(self, fs_root: str = "/tmp/trustcore", *, encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # Superseded password hashes per user, newest first
        self.password_history: Dict[str, List[str]] = {}
        self.organizations: Dict[str, Organization] = {}
        self.role_grants: Dict[str, RoleGrant] = {}
        self.user_sessions: Dict[str, UserSession] = {}
        self.remember_me_tokens: Dict[str, RememberMeToken] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.security_tokens: Dict[Tuple[str, str], SecurityToken] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so transaction() can wrap the public write methods
        self._data_lock = threading.RLock()
        self._txn_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("encryption key required for two-factor secrets")
        return Fernet(self._derive_cipher_key(key_material))

    # -- transactions ---------------------------------------------------

    _TXN_ATTRS = (
        "users",
        "credentials",
        "password_history",
        "organizations",
        "role_grants",
        "user_sessions",
        "remember_me_tokens",
        "backup_codes",
        "security_tokens",
        "audit_events",
    )

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Group several writes; all of them apply or none do."""
        with self._data_lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TXN_ATTRS}
            self._txn_depth += 1
            try:
                yield self
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise
            finally:
                self._txn_depth -= 1
            self._persist_state()

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                email_verified=email_verified,
                email_verified_at=_now() if email_verified else None,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            self._persist_state()
            return user

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_duration: timedelta
    ) -> Optional[Tuple[int, Optional[datetime], bool]]:
        """Atomically bump the failure counter and lock at the threshold.

        Returns ``(attempts, locked_until, newly_locked)`` or None for an
        unknown user.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = _now()
            user.failed_login_attempts += 1
            newly_locked = False
            if user.failed_login_attempts >= max_attempts and not user.is_locked(now):
                user.locked_until = now + lock_duration
                newly_locked = True
            self._persist_state()
            return user.failed_login_attempts, user.locked_until, newly_locked

    def clear_failed_logins(self, user_id: str, *, clear_lock: bool = True) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            if clear_lock:
                user.locked_until = None
            self._persist_state()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def push_password_history(self, user_id: str, password_hash: str, *, keep: int) -> None:
        with self._data_lock:
            history = [password_hash, *self.password_history.get(user_id, [])]
            self.password_history[user_id] = history[: max(keep, 0)]
            self._persist_state()

    def list_password_history(self, user_id: str, limit: int) -> List[str]:
        with self._data_lock:
            return list(self.password_history.get(user_id, [])[:limit])

    # -- two-factor -----------------------------------------------------

    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            return None

    def set_two_factor_secret(self, user_id: str, secret: str) -> User:
        """Store a pending secret; 2FA stays disabled until verified."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            user.two_factor_secret = self._encrypt_secret(secret)
            user.two_factor_enabled = False
            user.two_factor_verified = False
            self._persist_state()
            return user

    def get_two_factor_secret(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.two_factor_secret:
                return None
            return self._decrypt_secret(user.two_factor_secret)

    def enable_two_factor(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.two_factor_secret:
                return None
            user.two_factor_enabled = True
            user.two_factor_verified = True
            self._persist_state()
            return user

    def clear_two_factor(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.two_factor_secret = None
            user.two_factor_enabled = False
            user.two_factor_verified = False
            self.backup_codes.pop(user_id, None)
            self._persist_state()
            return user

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> List[BackupCode]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for backup codes", {"user_id": user_id})
            codes = [
                BackupCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=h)
                for h in code_hashes
            ]
            self.backup_codes[user_id] = codes
            self._persist_state()
            return list(codes)

    def list_backup_codes(self, user_id: str, *, unused_only: bool = True) -> List[BackupCode]:
        with self._data_lock:
            codes = self.backup_codes.get(user_id, [])
            return [c for c in codes if not unused_only or c.used_at is None]

    def mark_backup_code_used(self, user_id: str, code_id: str) -> bool:
        """Consume a backup code; False when it was already used."""
        with self._data_lock:
            for code in self.backup_codes.get(user_id, []):
                if code.id == code_id:
                    if code.used_at is not None:
                        return False
                    code.used_at = _now()
                    self._persist_state()
                    return True
            return False

    def delete_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            removed = self.backup_codes.pop(user_id, [])
            if removed:
                self._persist_state()
            return len(removed)

    # -- organizations & role grants ---------------------------------------

    def create_organization(self, name: str, slug: Optional[str] = None) -> Organization:
        slug = slug or re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "org"
        with self._data_lock:
            if any(org.slug == slug for org in self.organizations.values()):
                raise ConstraintViolation("organization slug already exists", {"field": "slug"})
            org = Organization.new(name=name, slug=slug)
            self.organizations[org.id] = org
            self._persist_state()
            return org

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(organization_id)

    def grant_role(
        self, user_id: str, role_name: str, organization_id: Optional[str] = None
    ) -> RoleGrant:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for role grant", {"user_id": user_id})
            if organization_id is not None and organization_id not in self.organizations:
                raise ConstraintViolation(
                    "organization not found", {"organization_id": organization_id}
                )
            for grant in self.role_grants.values():
                if (
                    grant.user_id == user_id
                    and grant.role_name == role_name
                    and grant.organization_id == organization_id
                ):
                    return grant
            grant = RoleGrant(
                id=str(uuid.uuid4()),
                user_id=user_id,
                role_name=role_name,
                organization_id=organization_id,
            )
            self.role_grants[grant.id] = grant
            self._persist_state()
            return grant

    def revoke_role(
        self, user_id: str, role_name: str, organization_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            for grant_id, grant in list(self.role_grants.items()):
                if (
                    grant.user_id == user_id
                    and grant.role_name == role_name
                    and grant.organization_id == organization_id
                ):
                    del self.role_grants[grant_id]
                    self._persist_state()
                    return True
            return False

    def list_role_grants(
        self,
        user_id: Optional[str] = None,
        *,
        role_names: Optional[Iterable[str]] = None,
        organization_id: Optional[str] = None,
        platform_only: bool = False,
    ) -> List[RoleGrant]:
        wanted = set(role_names) if role_names is not None else None
        with self._data_lock:
            results = []
            for grant in self.role_grants.values():
                if user_id is not None and grant.user_id != user_id:
                    continue
                if wanted is not None and grant.role_name not in wanted:
                    continue
                if platform_only and grant.organization_id is not None:
                    continue
                if organization_id is not None and grant.organization_id != organization_id:
                    continue
                results.append(grant)
            return sorted(results, key=lambda g: g.created_at)

    # -- persisted device sessions ---------------------------------------

    def create_user_session(
        self,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserSession:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = UserSession.new(
                user_id=user_id,
                token_hash=token_hash,
                ttl=ttl,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.user_sessions[token_hash] = record
            self._persist_state()
            return record

    def get_user_session(self, token_hash: str) -> Optional[UserSession]:
        with self._data_lock:
            return self.user_sessions.get(token_hash)

    def delete_user_session(self, token_hash: str) -> bool:
        with self._data_lock:
            removed = self.user_sessions.pop(token_hash, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [h for h, s in self.user_sessions.items() if s.user_id == user_id]
            for token_hash in stale:
                self.user_sessions.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_sessions(self, user_id: str) -> List[UserSession]:
        with self._data_lock:
            return [s for s in self.user_sessions.values() if s.user_id == user_id]

    # -- remember-me ------------------------------------------------------

    def create_remember_me_token(self, token: RememberMeToken) -> RememberMeToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.series in self.remember_me_tokens:
                raise ConstraintViolation("series already exists", {"field": "series"})
            self.remember_me_tokens[token.series] = token
            self._persist_state()
            return token

    def get_remember_me_token(self, series: str) -> Optional[RememberMeToken]:
        with self._data_lock:
            return self.remember_me_tokens.get(series)

    def rotate_remember_me_token(
        self,
        series: str,
        expected_hash: str,
        new_hash: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> bool:
        """Swap the validator hash only if it still equals ``expected_hash``."""
        with self._data_lock:
            token = self.remember_me_tokens.get(series)
            if not token or token.revoked_at is not None or token.token_hash != expected_hash:
                return False
            token.token_hash = new_hash
            token.last_used_at = _now()
            token.ip_address = ip_address
            token.user_agent = user_agent
            self._persist_state()
            return True

    def revoke_remember_me_token(self, series: str) -> bool:
        with self._data_lock:
            token = self.remember_me_tokens.get(series)
            if not token or token.revoked_at is not None:
                return False
            token.revoked_at = _now()
            self._persist_state()
            return True

    def revoke_user_remember_me_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = _now()
            revoked = 0
            for token in self.remember_me_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def delete_remember_me_token(self, series: str) -> bool:
        with self._data_lock:
            removed = self.remember_me_tokens.pop(series, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_remember_me_tokens(self, user_id: str) -> List[RememberMeToken]:
        with self._data_lock:
            return [t for t in self.remember_me_tokens.values() if t.user_id == user_id]

    def delete_expired_remember_me_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or _now()
        with self._data_lock:
            stale = [s for s, t in self.remember_me_tokens.items() if t.is_expired(current)]
            for series in stale:
                self.remember_me_tokens.pop(series, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- single-use security tokens ---------------------------------------

    def put_security_token(self, token: SecurityToken) -> SecurityToken:
        """Store ``token`` in its (user, kind) slot, replacing any previous one."""
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            for key, existing in self.security_tokens.items():
                if existing.kind == token.kind and existing.token_hash == token.token_hash:
                    if key != (token.user_id, token.kind.value):
                        raise ConstraintViolation("token hash collision", {"kind": token.kind.value})
            self.security_tokens[(token.user_id, token.kind.value)] = token
            self._persist_state()
            return token

    def find_security_token(self, kind: TokenKind, token_hash: str) -> Optional[SecurityToken]:
        with self._data_lock:
            for token in self.security_tokens.values():
                if token.kind == kind and token.token_hash == token_hash:
                    return token
            return None

    def consume_security_token(self, kind: TokenKind, token_hash: str) -> bool:
        """Mark the token consumed; only the first caller gets True."""
        with self._data_lock:
            token = self.find_security_token(kind, token_hash)
            if token is None or token.consumed_at is not None:
                return False
            token.consumed_at = _now()
            self._persist_state()
            return True

    def clear_security_token(self, user_id: str, kind: TokenKind) -> bool:
        with self._data_lock:
            removed = self.security_tokens.pop((user_id, kind.value), None)
            if removed:
                self._persist_state()
            return removed is not None

    # -- audit --------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()
            return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        category: Optional[str] = None,
        organization_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[AuditEvent], int]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
                and (category is None or e.category == category)
                and (organization_id is None or e.organization_id == organization_id)
                and (since is None or e.created_at >= since)
                and (until is None or e.created_at <= until)
            ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[offset : offset + limit], len(matches)

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if self._txn_depth:
            return
        state = {
            "users": [self._serialize_record(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "password_history": [
                {"user_id": user_id, "hashes": hashes}
                for user_id, hashes in self.password_history.items()
            ],
            "organizations": [self._serialize_record(o) for o in self.organizations.values()],
            "role_grants": [self._serialize_record(g) for g in self.role_grants.values()],
            "user_sessions": [self._serialize_record(s) for s in self.user_sessions.values()],
            "remember_me_tokens": [
                self._serialize_record(t) for t in self.remember_me_tokens.values()
            ],
            "backup_codes": [
                self._serialize_record(c) for codes in self.backup_codes.values() for c in codes
            ],
            "security_tokens": [
                self._serialize_record(t) for t in self.security_tokens.values()
            ],
            "audit_events": [self._serialize_record(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {
            u["id"]: self._deserialize_record(User, u) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.password_history = {
            entry["user_id"]: list(entry.get("hashes", []))
            for entry in data.get("password_history", [])
        }
        self.organizations = {
            o["id"]: self._deserialize_record(Organization, o)
            for o in data.get("organizations", [])
        }
        self.role_grants = {
            g["id"]: self._deserialize_record(RoleGrant, g) for g in data.get("role_grants", [])
        }
        self.user_sessions = {
            s["token_hash"]: self._deserialize_record(UserSession, s)
            for s in data.get("user_sessions", [])
        }
        self.remember_me_tokens = {
            t["series"]: self._deserialize_record(RememberMeToken, t)
            for t in data.get("remember_me_tokens", [])
        }
        self.backup_codes = {}
        for raw in data.get("backup_codes", []):
            code = self._deserialize_record(BackupCode, raw)
            self.backup_codes.setdefault(code.user_id, []).append(code)
        self.security_tokens = {}
        for raw in data.get("security_tokens", []):
            token = self._deserialize_record(SecurityToken, raw)
            self.security_tokens[(token.user_id, token.kind.value)] = token
        self.audit_events = [
            self._deserialize_record(AuditEvent, e) for e in data.get("audit_events", [])
        ]
        return True

    @staticmethod
    def _serialize_record(record: Any) -> dict:
        if not is_dataclass(record):
            raise TypeError(f"cannot serialize {type(record).__name__}")
        out: dict = {}
        for f in fields(record):
            value = getattr(record, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, TokenKind):
                value = value.value
            out[f.name] = value
        return out

    @staticmethod
    def _deserialize_record(cls: type, data: dict) -> Any:
        kwargs: dict = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and f.name.endswith(("_at", "_until")):
                value = datetime.fromisoformat(value)
            elif f.name == "kind" and value is not None:
                value = TokenKind(value)
            kwargs[f.name] = value
        return cls(**kwargs)


__all__ = ["MemoryStore"]
