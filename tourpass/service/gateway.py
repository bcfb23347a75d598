from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Protocol, Union

from tourpass.logging import get_logger, log_security_event
from tourpass.service.tokens import AccessTokenCodec, TokenFailure
from tourpass.storage.models import Account

logger = get_logger(__name__)


class GatewayFailure(str, Enum):
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_SUSPENDED = "account_suspended"
    INSUFFICIENT_ROLE = "insufficient_role"

    @property
    def status_code(self) -> int:
        if self in (GatewayFailure.ACCOUNT_SUSPENDED, GatewayFailure.INSUFFICIENT_ROLE):
            return 403
        return 401

    @property
    def message(self) -> str:
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES = {
    GatewayFailure.MISSING_TOKEN: "no token provided",
    GatewayFailure.INVALID_TOKEN: "invalid token",
    # Distinct wording tells clients to refresh rather than log in again
    GatewayFailure.TOKEN_EXPIRED: "access token expired",
    GatewayFailure.ACCOUNT_NOT_FOUND: "invalid token",
    GatewayFailure.ACCOUNT_SUSPENDED: "account suspended",
    GatewayFailure.INSUFFICIENT_ROLE: "insufficient privileges",
}


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    display_name: str
    role: str

    @classmethod
    def from_account(cls, account: Account) -> "Identity":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            role=account.role,
        )


class AccountLookup(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credential = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


class AuthGateway:
    """Turns an ``Authorization`` header into a trusted identity, or a failure.

    The account is re-read on every request because access tokens stay valid
    until expiry; suspensions made after issuance must still take effect.
    """

    def __init__(self, codec: AccessTokenCodec, accounts: AccountLookup) -> None:
        self.codec = codec
        self.accounts = accounts

    def authenticate(
        self, authorization: Optional[str], *, now: Optional[datetime] = None
    ) -> Union[Identity, GatewayFailure]:
        token = extract_bearer(authorization)
        if token is None:
            return GatewayFailure.MISSING_TOKEN
        claims = self.codec.verify(token, now=now)
        if claims is TokenFailure.EXPIRED:
            return GatewayFailure.TOKEN_EXPIRED
        if isinstance(claims, TokenFailure):
            return GatewayFailure.INVALID_TOKEN

        account = self.accounts.get_account(claims.account_id)
        if account is None:
            logger.warning("access_token_account_missing", account_id=claims.account_id)
            return GatewayFailure.ACCOUNT_NOT_FOUND
        if account.is_suspended:
            log_security_event(
                "suspended_account_access",
                account_id=account.id,
                is_active=account.is_active,
                is_archived=account.is_archived,
            )
            return GatewayFailure.ACCOUNT_SUSPENDED
        return Identity.from_account(account)

    def authorize(
        self, identity: Optional[Identity], allowed_roles: Iterable[str]
    ) -> Union[Identity, GatewayFailure]:
        if identity is None:
            return GatewayFailure.MISSING_TOKEN
        allowed = frozenset(allowed_roles)
        if identity.role not in allowed:
            log_security_event(
                "access_denied",
                account_id=identity.id,
                role=identity.role,
                required_roles=sorted(allowed),
            )
            return GatewayFailure.INSUFFICIENT_ROLE
        return identity

    def authenticate_optional(
        self, authorization: Optional[str], *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        result = self.authenticate(authorization, now=now)
        return result if isinstance(result, Identity) else None
