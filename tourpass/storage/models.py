from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ROLE_CLIENT = "client"
ROLE_ADMIN = "admin"
ROLE_SUPERADMIN = "superadmin"

ROLES = frozenset({ROLE_CLIENT, ROLE_ADMIN, ROLE_SUPERADMIN})
ADMIN_ROLES = frozenset({ROLE_ADMIN, ROLE_SUPERADMIN})

# 40 random bytes -> 320 bits of entropy, rendered as 80 hex characters
REFRESH_TOKEN_BYTES = 40


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    display_name: str
    role: str = ROLE_CLIENT
    is_active: bool = True
    is_archived: bool = False
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    # Single-use tokens are stored as SHA-256 digests, never raw
    email_verification_digest: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_digest: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        display_name: str,
        *,
        role: str = ROLE_CLIENT,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
        )

    @property
    def is_suspended(self) -> bool:
        return not self.is_active or self.is_archived


@dataclass
class RefreshToken:
    """Persisted continuation of a login session.

    The token value is both the secret handed to the client and the lookup key.
    Expiry is evaluated lazily against the current time; revocation is a one-way
    transition recorded in ``revoked_at``.
    """

    token: str
    account_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    created_by_ip: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    revoked_reason: Optional[str] = None
    replaced_by_token: Optional[str] = None

    @staticmethod
    def generate_value() -> str:
        return secrets.token_hex(REFRESH_TOKEN_BYTES)

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl: timedelta,
        created_by_ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued_at = now or utcnow()
        return cls(
            token=cls.generate_value(),
            account_id=account_id,
            created_at=issued_at,
            expires_at=issued_at + ttl,
            created_by_ip=created_by_ip,
        )

    def expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def active_at(self, now: datetime) -> bool:
        return not self.is_revoked and not self.expired_at(now)

    @property
    def is_expired(self) -> bool:
        return self.expired_at(utcnow())

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def is_active(self) -> bool:
        return self.active_at(utcnow())
