from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tourpass.config import Settings
from tourpass.logging import get_logger, log_security_event
from tourpass.service.email import EmailService
from tourpass.service.errors import ConflictError, ForbiddenError, ValidationError
from tourpass.service.sessions import SessionIssuer, TokenPair
from tourpass.storage.errors import ConstraintViolation
from tourpass.storage.models import ADMIN_ROLES, ROLES, Account, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
# 32 random bytes; only the SHA-256 digest is ever stored
SINGLE_USE_TOKEN_BYTES = 32


class AuthFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_SUSPENDED = "account_suspended"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        display_name: str,
        *,
        role: str = ...,
        is_active: bool = ...,
        email_verified: bool = ...,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self, role: Optional[str] = None, limit: int = 100
    ) -> List[Account]: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def set_verification_token(
        self, account_id: str, digest: str, expires_at: datetime
    ) -> None: ...

    def consume_verification_token(
        self, digest: str, now: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def set_password_reset_token(
        self, account_id: str, digest: str, expires_at: datetime
    ) -> None: ...

    def consume_password_reset_token(
        self, digest: str, now: Optional[datetime] = None
    ) -> Optional[Account]: ...


@dataclass(frozen=True)
class AuthenticatedSession:
    account: Account
    tokens: TokenPair


def normalize_email(email: str) -> str:
    return email.strip().lower()


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthService:
    """Registration, email verification, password login and password reset.

    Session tokens are minted by :class:`SessionIssuer`; this service decides
    when an account is allowed to have one.
    """

    def __init__(
        self,
        store: AccountStore,
        sessions: SessionIssuer,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.email = email
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # passwords ----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, account_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(account_id, pwd_hash, algo)

    def verify_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails still pay for one argon2 verification
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            pass

    # single-use tokens --------------------------------------------------

    @staticmethod
    def _new_single_use_token() -> Tuple[str, str]:
        token = secrets.token_urlsafe(SINGLE_USE_TOKEN_BYTES)
        return token, token_digest(token)

    async def _deliver(self, kind: str, send, to_address: str, token: str) -> None:
        try:
            delivered = await asyncio.to_thread(send, to_address, token)
        except Exception as exc:
            self.logger.error(
                "account_email_failed", kind=kind, error_type=type(exc).__name__, error=str(exc)
            )
            return
        if not delivered:
            self.logger.warning("account_email_not_delivered", kind=kind)

    async def issue_email_verification(self, account: Account) -> str:
        token, digest = self._new_single_use_token()
        expires_at = utcnow() + timedelta(hours=self.settings.email_verification_ttl_hours)
        self.store.set_verification_token(account.id, digest, expires_at)
        self.logger.info("email_verification_requested", account_id=account.id)
        await self._deliver(
            "verification", self.email.send_email_verification, account.email, token
        )
        return token

    # flows --------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        display_name: str,
        role: Optional[str] = None,
    ) -> Account:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        requested_role = role or self.settings.default_role
        if requested_role not in ROLES:
            raise ValidationError("unknown role", detail={"role": requested_role})
        if requested_role in ADMIN_ROLES:
            log_security_event("privileged_self_registration_blocked", role=requested_role)
            raise ForbiddenError("privileged roles cannot be self-registered")

        try:
            account = self.store.create_account(
                normalize_email(email), display_name.strip(), role=requested_role
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(account.id, password)
        self.logger.info("account_registered", account_id=account.id, role=account.role)
        # Delivery problems are logged inside; the account stays created either way
        await self.issue_email_verification(account)
        return account

    async def verify_email(
        self, token: str, ip: Optional[str] = None
    ) -> Union[AuthenticatedSession, AuthFailure]:
        account = self.store.consume_verification_token(token_digest(token))
        if account is None:
            self.logger.warning("email_verification_invalid_token")
            return AuthFailure.INVALID_OR_EXPIRED_TOKEN
        self.logger.info("email_verified", account_id=account.id)
        if account.is_suspended:
            return AuthFailure.ACCOUNT_SUSPENDED
        tokens = await self.sessions.login(account.id, account.role, ip)
        return AuthenticatedSession(account=account, tokens=tokens)

    async def resend_verification(self, email: str) -> None:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None or account.email_verified:
            return
        await self.issue_email_verification(account)

    async def login(
        self, email: str, password: str, ip: Optional[str] = None
    ) -> Union[AuthenticatedSession, AuthFailure]:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            self._burn_password_check(password)
            log_security_event("login_failed", reason="unknown_account", ip=ip)
            return AuthFailure.INVALID_CREDENTIALS
        if not self.verify_password(account.id, password):
            log_security_event(
                "login_failed", reason="bad_password", account_id=account.id, ip=ip
            )
            return AuthFailure.INVALID_CREDENTIALS
        # Status checks only after the password matched, so they leak nothing
        if account.is_suspended:
            log_security_event("login_suspended_account", account_id=account.id, ip=ip)
            return AuthFailure.ACCOUNT_SUSPENDED
        if self.settings.require_email_verification and not account.email_verified:
            return AuthFailure.EMAIL_NOT_VERIFIED
        tokens = await self.sessions.login(account.id, account.role, ip)
        log_security_event("login", account_id=account.id, ip=ip)
        return AuthenticatedSession(account=account, tokens=tokens)

    async def forgot_password(self, email: str) -> None:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None or account.is_suspended:
            self.logger.info("password_reset_requested_unknown")
            return
        token, digest = self._new_single_use_token()
        expires_at = utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_password_reset_token(account.id, digest, expires_at)
        self.logger.info("password_reset_requested", account_id=account.id)
        await self._deliver("password_reset", self.email.send_password_reset, account.email, token)

    async def reset_password(
        self, token: str, new_password: str, ip: Optional[str] = None
    ) -> Union[int, AuthFailure]:
        """Set a new password and revoke every outstanding session.

        Returns the number of refresh tokens revoked.
        """
        account = self.store.consume_password_reset_token(token_digest(token))
        if account is None:
            self.logger.warning("password_reset_invalid_token")
            return AuthFailure.INVALID_OR_EXPIRED_TOKEN
        self.save_password(account.id, new_password)
        revoked = await self.sessions.revoke_all_for_account(account.id, ip)
        self.logger.info("password_reset_completed", account_id=account.id, revoked=revoked)
        return revoked
