from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from trustcore.service.errors import TokenExpiredError, TokenInvalidError
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import SecurityToken, TokenKind, _now


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def tokens_match(candidate: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_token(candidate), stored_hash)


@dataclass(frozen=True)
class RedeemedToken:
    token: SecurityToken
    # False when an earlier call already consumed this token
    first_use: bool


class SecurityTokenService:
    """Issues and redeems single-use emailed tokens.

    Each ``TokenKind`` has its own slot per user, so a password-reset link
    never collides with an unlock or verification link.
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def issue(self, user_id: str, kind: TokenKind, ttl: timedelta) -> str:
        plaintext = secrets.token_hex(32)
        self.store.put_security_token(
            SecurityToken(
                user_id=user_id,
                kind=kind,
                token_hash=hash_token(plaintext),
                expires_at=_now() + ttl,
            )
        )
        return plaintext

    def lookup(self, kind: TokenKind, plaintext: str) -> Optional[SecurityToken]:
        if not plaintext:
            return None
        record = self.store.find_security_token(kind, hash_token(plaintext))
        if record is None or not tokens_match(plaintext, record.token_hash):
            return None
        return record

    def redeem(
        self, kind: TokenKind, plaintext: str, *, allow_consumed: bool = False
    ) -> RedeemedToken:
        """Consume ``plaintext`` atomically.

        An already-consumed token raises ``TokenInvalidError`` unless
        ``allow_consumed`` is set, in which case it is reported with
        ``first_use=False`` so the caller can treat the replay as a no-op.
        """
        record = self.lookup(kind, plaintext)
        if record is None:
            raise TokenInvalidError()
        if record.consumed_at is None and record.is_expired():
            raise TokenExpiredError()
        first_use = self.store.consume_security_token(kind, record.token_hash)
        if not first_use and not allow_consumed:
            raise TokenInvalidError()
        return RedeemedToken(token=record, first_use=first_use)

    def clear(self, user_id: str, kind: TokenKind) -> None:
        self.store.clear_security_token(user_id, kind)


__all__ = ["RedeemedToken", "SecurityTokenService", "hash_token", "tokens_match"]
