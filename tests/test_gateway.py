"""Tests for request-time authentication and role checks."""

from datetime import datetime, timedelta, timezone

import pytest

from tourpass.service.gateway import AuthGateway, GatewayFailure, Identity, extract_bearer
from tourpass.service.tokens import AccessTokenCodec
from tourpass.storage.memory import MemoryStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec():
    return AccessTokenCodec(
        "gateway-test-secret-0123456789abcdef",
        issuer="tourpass",
        audience="tourpass-clients",
        ttl=timedelta(minutes=15),
    )


@pytest.fixture
def gateway(codec, store):
    return AuthGateway(codec, store)


@pytest.fixture
def account(store):
    return store.create_account("ada@example.com", "Ada", email_verified=True)


def _bearer(codec, account, now=T0):
    return f"Bearer {codec.issue(account.id, account.role, now=now)}"


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("  Bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer(header) == expected


class TestAuthenticate:
    def test_valid_token_resolves_identity(self, gateway, codec, account):
        identity = gateway.authenticate(_bearer(codec, account), now=T0)
        assert identity == Identity.from_account(account)

    def test_missing_token(self, gateway):
        result = gateway.authenticate(None, now=T0)
        assert result is GatewayFailure.MISSING_TOKEN
        assert result.status_code == 401
        assert result.message == "no token provided"

    def test_garbage_token(self, gateway):
        assert gateway.authenticate("Bearer not-a-token", now=T0) is GatewayFailure.INVALID_TOKEN

    def test_expired_token_has_distinct_failure(self, gateway, codec, account):
        result = gateway.authenticate(_bearer(codec, account), now=T0 + timedelta(minutes=15))
        assert result is GatewayFailure.TOKEN_EXPIRED
        assert result.status_code == 401
        assert result.message == "access token expired"

    def test_deleted_account_is_unauthenticated(self, gateway, codec, store, account):
        header = _bearer(codec, account)
        store.accounts.pop(account.id)
        result = gateway.authenticate(header, now=T0)
        assert result is GatewayFailure.ACCOUNT_NOT_FOUND
        assert result.status_code == 401

    @pytest.mark.parametrize(
        "status", [{"is_active": False}, {"is_archived": True}]
    )
    def test_suspended_after_issue_is_forbidden(self, gateway, codec, store, account, status):
        header = _bearer(codec, account)
        store.update_account_status(account.id, **status)
        result = gateway.authenticate(header, now=T0)
        assert result is GatewayFailure.ACCOUNT_SUSPENDED
        assert result.status_code == 403

    def test_identity_reflects_current_role(self, gateway, codec, store, account):
        header = _bearer(codec, account)
        store.update_account_role(account.id, "admin")
        assert gateway.authenticate(header, now=T0).role == "admin"

    def test_optional_swallows_failures(self, gateway, codec, account):
        assert gateway.authenticate_optional(None, now=T0) is None
        assert gateway.authenticate_optional("Bearer junk", now=T0) is None
        assert gateway.authenticate_optional(_bearer(codec, account), now=T0).id == account.id


class TestAuthorize:
    def test_allowed_role_passes(self, gateway, account):
        identity = Identity.from_account(account)
        assert gateway.authorize(identity, {"client", "admin"}) is identity

    def test_insufficient_role_is_forbidden(self, gateway, account):
        result = gateway.authorize(Identity.from_account(account), {"admin", "superadmin"})
        assert result is GatewayFailure.INSUFFICIENT_ROLE
        assert result.status_code == 403
        assert result.message == "insufficient privileges"

    def test_no_identity_is_unauthenticated(self, gateway):
        assert gateway.authorize(None, {"admin"}) is GatewayFailure.MISSING_TOKEN
