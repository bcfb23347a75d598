from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from tourpass.logging import get_logger
from tourpass.storage.models import RefreshToken, utcnow

REASON_ROTATED = "replaced by new token"
REASON_LOGOUT = "user logout"
REASON_BULK = "bulk revocation"
REASON_DEACTIVATED = "account deactivated"


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]: ...

    def revoke_refresh_token(
        self,
        token: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        replaced_by_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]: ...

    def set_replaced_by(self, token: str, replaced_by_token: str) -> None: ...

    def revoke_account_refresh_tokens(
        self,
        account_id: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...

    def count_active_refresh_tokens(
        self, account_id: str, now: Optional[datetime] = None
    ) -> int: ...

    def purge_stale_refresh_tokens(
        self, retention: timedelta, now: Optional[datetime] = None
    ) -> int: ...


class RefreshTokenService:
    """Lifecycle of persisted refresh tokens: issue, look up, revoke, purge.

    Revocation is conditional: the store only marks a token revoked while it is
    still active and reports whether it did, so callers never need a separate
    read-then-write to decide who won.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        ttl: timedelta = timedelta(days=7),
        retention: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.retention = retention
        self.logger = get_logger(__name__)

    def issue(
        self,
        account_id: str,
        issuing_ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> RefreshToken:
        record = RefreshToken.new(account_id, self.ttl, issuing_ip, now=now)
        return self.store.create_refresh_token(record)

    def lookup(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        return self.store.get_refresh_token(token)

    def revoke(
        self,
        token: str,
        *,
        reason: str,
        ip: Optional[str] = None,
        replacement_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Revoke ``token`` if it is still active; ``None`` means nothing changed."""
        return self.store.revoke_refresh_token(
            token,
            reason=reason,
            revoked_by_ip=ip,
            replaced_by_token=replacement_token,
            now=now,
        )

    def record_replacement(self, token: str, replacement_token: str) -> None:
        self.store.set_replaced_by(token, replacement_token)

    def revoke_all(
        self,
        account_id: str,
        ip: Optional[str] = None,
        *,
        reason: str = REASON_BULK,
        now: Optional[datetime] = None,
    ) -> int:
        revoked = self.store.revoke_account_refresh_tokens(
            account_id, reason=reason, revoked_by_ip=ip, now=now
        )
        self.logger.info(
            "refresh_tokens_revoked_for_account",
            account_id=account_id,
            count=revoked,
            reason=reason,
        )
        return revoked

    def count_active(self, account_id: str, *, now: Optional[datetime] = None) -> int:
        return self.store.count_active_refresh_tokens(account_id, now=now)

    def list_for_account(self, account_id: str) -> List[RefreshToken]:
        return self.store.list_refresh_tokens(account_id)

    def purge_stale(self, *, now: Optional[datetime] = None) -> int:
        purged = self.store.purge_stale_refresh_tokens(
            self.retention, now=now or utcnow()
        )
        self.logger.info("refresh_token_purge_completed", purged=purged)
        return purged
