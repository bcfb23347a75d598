from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from tourpass.logging import get_logger
from tourpass.storage.errors import ConstraintViolation
from tourpass.storage.models import (
    ROLE_CLIENT,
    Account,
    RefreshToken,
    utcnow,
)


class MemoryStore:
    """In-process account and refresh token store, persisted to a JSON snapshot."""

    def __init__(self, fs_root: str = "/tmp/tourpass") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock for all data operations; conditional revocation relies on it
        # to make check-and-mark a single atomic step
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def ping(self) -> bool:
        return True

    # accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        display_name: str,
        *,
        role: str = ROLE_CLIENT,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(
                email,
                display_name,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def list_accounts(
        self, role: Optional[str] = None, limit: int = 100
    ) -> List[Account]:
        with self._data_lock:
            results = [a for a in self.accounts.values() if not role or a.role == role]
            return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_account_status(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        is_archived: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if is_active is not None:
                account.is_active = is_active
            if is_archived is not None:
                account.is_archived = is_archived
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # single-use account tokens -------------------------------------------

    def set_verification_token(
        self, account_id: str, digest: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            account.email_verification_digest = digest
            account.email_verification_expires_at = expires_at
            self._persist_state()

    def consume_verification_token(
        self, digest: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        """Mark the owning account verified and clear the token in one step."""
        now = now or utcnow()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email_verification_digest != digest:
                    continue
                expires_at = account.email_verification_expires_at
                if expires_at is None or now >= expires_at:
                    return None
                account.email_verification_digest = None
                account.email_verification_expires_at = None
                account.email_verified = True
                account.updated_at = now
                self._persist_state()
                return account
            return None

    def set_password_reset_token(
        self, account_id: str, digest: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            account.password_reset_digest = digest
            account.password_reset_expires_at = expires_at
            self._persist_state()

    def consume_password_reset_token(
        self, digest: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        now = now or utcnow()
        with self._data_lock:
            for account in self.accounts.values():
                if account.password_reset_digest != digest:
                    continue
                expires_at = account.password_reset_expires_at
                if expires_at is None or now >= expires_at:
                    return None
                account.password_reset_digest = None
                account.password_reset_expires_at = None
                account.updated_at = now
                self._persist_state()
                return account
            return None

    # refresh tokens -----------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for refresh token",
                    {"account_id": record.account_id},
                )
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        with self._data_lock:
            records = [r for r in self.refresh_tokens.values() if r.account_id == account_id]
            return sorted(records, key=lambda r: r.created_at, reverse=True)

    def revoke_refresh_token(
        self,
        token: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        replaced_by_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Revoke ``token`` only if it is still active.

        Returns the updated record, or ``None`` when the token is unknown,
        already revoked or expired. Concurrent callers racing on the same token
        see exactly one non-``None`` result.
        """
        now = now or utcnow()
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or not record.active_at(now):
                return None
            record.revoked_at = now
            record.revoked_by_ip = revoked_by_ip
            record.revoked_reason = reason
            record.replaced_by_token = replaced_by_token
            self._persist_state()
            return record

    def set_replaced_by(self, token: str, replaced_by_token: str) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None:
                return
            record.replaced_by_token = replaced_by_token
            self._persist_state()

    def revoke_account_refresh_tokens(
        self,
        account_id: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        revoked = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.account_id != account_id or not record.active_at(now):
                    continue
                record.revoked_at = now
                record.revoked_by_ip = revoked_by_ip
                record.revoked_reason = reason
                revoked += 1
            if revoked:
                self._persist_state()
        return revoked

    def count_active_refresh_tokens(
        self, account_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._data_lock:
            return sum(
                1
                for record in self.refresh_tokens.values()
                if record.account_id == account_id and record.active_at(now)
            )

    def purge_stale_refresh_tokens(
        self, retention: timedelta, now: Optional[datetime] = None
    ) -> int:
        """Delete tokens past expiry, or revoked longer ago than ``retention``."""
        now = now or utcnow()
        cutoff = now - retention
        with self._data_lock:
            stale = [
                value
                for value, record in self.refresh_tokens.items()
                if record.expired_at(now)
                or (record.revoked_at is not None and record.revoked_at < cutoff)
            ]
            for value in stale:
                self.refresh_tokens.pop(value, None)
            if stale:
                self._persist_state()
        return len(stale)

    # persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "display_name": account.display_name,
            "role": account.role,
            "is_active": account.is_active,
            "is_archived": account.is_archived,
            "email_verified": account.email_verified,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "email_verification_digest": account.email_verification_digest,
            "email_verification_expires_at": self._serialize_datetime(
                account.email_verification_expires_at
            ),
            "password_reset_digest": account.password_reset_digest,
            "password_reset_expires_at": self._serialize_datetime(
                account.password_reset_expires_at
            ),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            display_name=data.get("display_name", ""),
            role=data.get("role", ROLE_CLIENT),
            is_active=data.get("is_active", True),
            is_archived=data.get("is_archived", False),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            email_verification_digest=data.get("email_verification_digest"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            password_reset_digest=data.get("password_reset_digest"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "token": record.token,
            "account_id": record.account_id,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_by_ip": record.created_by_ip,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_by_ip": record.revoked_by_ip,
            "revoked_reason": record.revoked_reason,
            "replaced_by_token": record.replaced_by_token,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            token=data["token"],
            account_id=str(data["account_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_by_ip=data.get("created_by_ip"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_by_ip=data.get("revoked_by_ip"),
            revoked_reason=data.get("revoked_reason"),
            replaced_by_token=data.get("replaced_by_token"),
        )
