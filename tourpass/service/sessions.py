"""Session issuance, refresh rotation and revocation.

This is the only place that mints token pairs. Every refresh token is single
use: redeeming it revokes it (conditionally, in one store operation) before the
replacement exists, so two concurrent redeemers of the same value can never
both succeed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol, Union

from tourpass.logging import get_logger, log_security_event
from tourpass.service.refresh_tokens import (
    REASON_BULK,
    REASON_LOGOUT,
    REASON_ROTATED,
    RefreshTokenService,
)
from tourpass.service.tokens import AccessTokenCodec
from tourpass.storage.models import Account, RefreshToken, utcnow

logger = get_logger(__name__)


class SessionFailure(str, Enum):
    INVALID_TOKEN = "invalid_token"
    EXPIRED_OR_REVOKED = "expired_or_revoked"
    ACCOUNT_NOT_FOUND = "account_not_found"
    NOT_FOUND = "not_found"
    ALREADY_INACTIVE = "already_inactive"


class AccountLookup(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class RefreshResult:
    tokens: TokenPair
    account_id: str
    role: str


class SessionIssuer:
    def __init__(
        self,
        codec: AccessTokenCodec,
        refresh_tokens: RefreshTokenService,
        accounts: AccountLookup,
    ) -> None:
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.accounts = accounts

    def _mint(
        self, account_id: str, role: str, ip: Optional[str], now: datetime
    ) -> TokenPair:
        access_token = self.codec.issue(account_id, role, now=now)
        record = self.refresh_tokens.issue(account_id, ip, now=now)
        return TokenPair(
            access_token=access_token,
            refresh_token=record.token,
            access_expires_in=int(self.codec.ttl.total_seconds()),
            refresh_expires_at=record.expires_at,
        )

    async def login(
        self,
        account_id: str,
        role: str,
        ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        """Start a new session; existing sessions for the account stay active."""
        pair = self._mint(account_id, role, ip, now or utcnow())
        logger.info("session_started", account_id=account_id, ip=ip)
        return pair

    async def refresh(
        self,
        presented_token: str,
        ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Union[RefreshResult, SessionFailure]:
        now = now or utcnow()
        record = self.refresh_tokens.lookup(presented_token)
        if record is None:
            return SessionFailure.INVALID_TOKEN
        if not record.active_at(now):
            if record.is_revoked:
                log_security_event(
                    "refresh_token_replayed",
                    account_id=record.account_id,
                    ip=ip,
                    revoked_reason=record.revoked_reason,
                )
            return SessionFailure.EXPIRED_OR_REVOKED

        account = self.accounts.get_account(record.account_id)
        if account is None:
            logger.warning("refresh_token_orphaned", account_id=record.account_id)
            return SessionFailure.ACCOUNT_NOT_FOUND

        # Burn the presented token before its successor exists
        revoked = self.refresh_tokens.revoke(
            presented_token, reason=REASON_ROTATED, ip=ip, now=now
        )
        if revoked is None:
            log_security_event(
                "refresh_token_rotation_race_lost", account_id=account.id, ip=ip
            )
            return SessionFailure.EXPIRED_OR_REVOKED

        pair = self._mint(account.id, account.role, ip, now)
        self.refresh_tokens.record_replacement(presented_token, pair.refresh_token)
        logger.info("session_refreshed", account_id=account.id)
        return RefreshResult(tokens=pair, account_id=account.id, role=account.role)

    async def logout(
        self,
        presented_token: str,
        ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Union[RefreshToken, SessionFailure]:
        now = now or utcnow()
        record = self.refresh_tokens.lookup(presented_token)
        if record is None:
            return SessionFailure.NOT_FOUND
        if not record.active_at(now):
            return SessionFailure.ALREADY_INACTIVE
        revoked = self.refresh_tokens.revoke(
            presented_token, reason=REASON_LOGOUT, ip=ip, now=now
        )
        if revoked is None:
            return SessionFailure.ALREADY_INACTIVE
        log_security_event("logout", account_id=revoked.account_id, ip=ip)
        return revoked

    async def revoke_all_for_account(
        self,
        account_id: str,
        ip: Optional[str] = None,
        *,
        reason: str = REASON_BULK,
        now: Optional[datetime] = None,
    ) -> int:
        revoked = self.refresh_tokens.revoke_all(account_id, ip, reason=reason, now=now)
        if revoked:
            log_security_event(
                "sessions_bulk_revoked", account_id=account_id, count=revoked, reason=reason
            )
        return revoked
