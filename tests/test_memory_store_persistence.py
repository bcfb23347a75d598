from datetime import datetime, timedelta, timezone

import pytest

from tourpass.storage.errors import ConstraintViolation
from tourpass.storage.memory import MemoryStore
from tourpass.storage.models import RefreshToken

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_accounts_and_tokens_survive_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("ada@example.com", "Ada", email_verified=True)
    store.save_password(account.id, "hash", "argon2id")
    record = store.create_refresh_token(
        RefreshToken.new(account.id, timedelta(days=7), "10.0.0.1", now=T0)
    )
    store.revoke_refresh_token(record.token, reason="user logout", now=T0)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    loaded = reloaded.get_account_by_email("ada@example.com")
    assert loaded.id == account.id
    assert loaded.email_verified is True
    assert reloaded.get_password_record(account.id) == ("hash", "argon2id")
    token = reloaded.get_refresh_token(record.token)
    assert token.revoked_at == T0
    assert token.revoked_reason == "user logout"
    assert token.created_by_ip == "10.0.0.1"


def test_duplicate_email_is_a_constraint_violation(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_account("ada@example.com", "Ada")
    with pytest.raises(ConstraintViolation):
        store.create_account("ada@example.com", "Other Ada")


def test_refresh_token_requires_existing_account(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(RefreshToken.new("missing", timedelta(days=1)))


def test_verification_token_consumed_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("ada@example.com", "Ada")
    store.set_verification_token(account.id, "digest-1", T0 + timedelta(hours=1))

    verified = store.consume_verification_token("digest-1", now=T0)
    assert verified.email_verified is True
    assert verified.email_verification_digest is None
    assert store.consume_verification_token("digest-1", now=T0) is None


def test_expired_reset_token_not_consumed(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("ada@example.com", "Ada")
    store.set_password_reset_token(account.id, "digest-2", T0)
    assert store.consume_password_reset_token("digest-2", now=T0) is None
    assert store.get_account(account.id).password_reset_digest == "digest-2"
