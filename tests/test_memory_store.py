from datetime import timedelta

import pytest

from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import RememberMeToken, SecurityToken, TokenKind, _now

KEY = "memory-store-test-key-0123456789abcdef"


def test_memory_store_persists_users_grants_and_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("persist@example.com", first_name="Per", email_verified=True)
    org = store.create_organization("Persisted Org")
    store.grant_role(user.id, "ROLE_OWNER", org.id)
    store.save_password(user.id, "hash", "argon2id")
    store.put_security_token(
        SecurityToken(
            user_id=user.id,
            kind=TokenKind.PASSWORD_RESET,
            token_hash="abc",
            expires_at=_now() + timedelta(hours=1),
        )
    )
    store.set_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")

    reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.first_name == "Per"
    assert reloaded_user.email_verified_at is not None
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    (grant,) = reloaded.list_role_grants(user.id)
    assert grant.organization_id == org.id
    token = reloaded.find_security_token(TokenKind.PASSWORD_RESET, "abc")
    assert token.kind is TokenKind.PASSWORD_RESET
    assert reloaded.get_two_factor_secret(user.id) == "JBSWY3DPEHPK3PXP"


def test_two_factor_secret_needs_same_key(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("secret@example.com")
    store.set_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
    assert store.get_user(user.id).two_factor_secret != "JBSWY3DPEHPK3PXP"

    other = MemoryStore(fs_root=str(tmp_path), encryption_key="a-different-key-0123456789abcdef")
    assert other.get_two_factor_secret(user.id) is None


def test_duplicate_email_is_case_insensitive(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    store.create_user("dup@example.com")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(" DUP@example.com ")
    assert excinfo.value.detail == {"field": "email"}


def test_transaction_rolls_back_all_writes(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    with pytest.raises(ConstraintViolation):
        with store.transaction():
            user = store.create_user("rollback@example.com")
            store.save_password(user.id, "hash", "argon2id")
            store.grant_role(user.id, "ROLE_USER", "missing-org")
    assert store.get_user_by_email("rollback@example.com") is None
    assert store.credentials == {}

    reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    assert reloaded.get_user_by_email("rollback@example.com") is None


def test_failed_login_counter_locks_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("lock@example.com")
    results = [
        store.record_failed_login(user.id, max_attempts=3, lock_duration=timedelta(minutes=15))
        for _ in range(4)
    ]
    assert [r[0] for r in results] == [1, 2, 3, 4]
    assert [r[2] for r in results] == [False, False, True, False]
    assert store.record_failed_login("missing", max_attempts=3, lock_duration=timedelta(1)) is None


def test_security_token_consumed_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("token@example.com")
    store.put_security_token(
        SecurityToken(
            user_id=user.id,
            kind=TokenKind.ACCOUNT_UNLOCK,
            token_hash="h1",
            expires_at=_now() + timedelta(hours=1),
        )
    )
    assert store.consume_security_token(TokenKind.ACCOUNT_UNLOCK, "h1") is True
    assert store.consume_security_token(TokenKind.ACCOUNT_UNLOCK, "h1") is False
    # Same hash under a different kind is a different slot
    assert store.find_security_token(TokenKind.PASSWORD_RESET, "h1") is None


def test_remember_me_rotation_is_compare_and_swap(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("rm@example.com")
    store.create_remember_me_token(
        RememberMeToken(
            id="t1",
            user_id=user.id,
            series="s1",
            token_hash="old",
            expires_at=_now() + timedelta(days=30),
        )
    )
    assert store.rotate_remember_me_token("s1", "old", "new", ip_address=None, user_agent=None)
    assert not store.rotate_remember_me_token("s1", "old", "newer", ip_address=None, user_agent=None)
    assert store.get_remember_me_token("s1").token_hash == "new"
    with pytest.raises(ConstraintViolation):
        store.create_remember_me_token(
            RememberMeToken(
                id="t2", user_id=user.id, series="s1", token_hash="x", expires_at=_now()
            )
        )


def test_corrupt_state_file_starts_empty(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    assert store.list_users() == []


def test_password_history_newest_first_and_bounded(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("history@example.com")
    for digest in ("h1", "h2", "h3", "h4"):
        store.push_password_history(user.id, digest, keep=3)

    assert store.list_password_history(user.id, 10) == ["h4", "h3", "h2"]
    assert store.list_password_history(user.id, 2) == ["h4", "h3"]
    reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    assert reloaded.list_password_history(user.id, 10) == ["h4", "h3", "h2"]
