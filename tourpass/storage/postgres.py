from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tourpass.logging import get_logger
from tourpass.storage.errors import ConstraintViolation
from tourpass.storage.models import ROLE_CLIENT, Account, RefreshToken, utcnow

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'client',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_archived BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_digest TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        password_reset_digest TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        created_by_ip TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_by_ip TEXT,
        revoked_reason TEXT,
        replaced_by_token TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
    "CREATE INDEX IF NOT EXISTS account_verification_digest_idx ON account (email_verification_digest)",
    "CREATE INDEX IF NOT EXISTS account_reset_digest_idx ON account (password_reset_digest)",
)


class PostgresStore:
    """Postgres-backed account and refresh token store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account and refresh token tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _is_account_id(value: str) -> bool:
        # account.id is a UUID column; anything else can never match a row
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name") or "",
            role=row.get("role", ROLE_CLIENT),
            is_active=row.get("is_active", True),
            is_archived=row.get("is_archived", False),
            email_verified=row.get("email_verified", False),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
            email_verification_digest=row.get("email_verification_digest"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_digest=row.get("password_reset_digest"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            account_id=str(row["account_id"]),
            created_at=row.get("created_at") or utcnow(),
            expires_at=row["expires_at"],
            created_by_ip=row.get("created_by_ip"),
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            revoked_reason=row.get("revoked_reason"),
            replaced_by_token=row.get("replaced_by_token"),
        )

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
        account = Account.new(
            email,
            display_name,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, display_name, role, is_active, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.display_name,
                        account.role,
                        account.is_active,
                        account.email_verified,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        if not self._is_account_id(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(
        self, role: Optional[str] = None, limit: int = 100
    ) -> List[Account]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM account WHERE role = %s ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        if not self._is_account_id(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account_status(
        self,
        account_id: str,
        *,
        is_active: Optional[bool] = None,
        is_archived: Optional[bool] = None,
    ) -> Optional[Account]:
        if not self._is_account_id(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET is_active = COALESCE(%s, is_active),
                    is_archived = COALESCE(%s, is_archived),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (is_active, is_archived, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # single-use account tokens -------------------------------------------

    def _set_account_token(
        self, column: str, account_id: str, digest: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account
                SET {column}_digest = %s, {column}_expires_at = %s
                WHERE id = %s
                RETURNING id
                """,
                (digest, expires_at, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    def set_verification_token(
        self, account_id: str, digest: str, expires_at: datetime
    ) -> None:
        self._set_account_token("email_verification", account_id, digest, expires_at)

    def consume_verification_token(
        self, digest: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET email_verified = TRUE,
                    email_verification_digest = NULL,
                    email_verification_expires_at = NULL,
                    updated_at = now()
                WHERE email_verification_digest = %s
                  AND email_verification_expires_at > %s
                RETURNING *
                """,
                (digest, now or utcnow()),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def set_password_reset_token(
        self, account_id: str, digest: str, expires_at: datetime
    ) -> None:
        self._set_account_token("password_reset", account_id, digest, expires_at)

    def consume_password_reset_token(
        self, digest: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_reset_digest = NULL,
                    password_reset_expires_at = NULL,
                    updated_at = now()
                WHERE password_reset_digest = %s
                  AND password_reset_expires_at > %s
                RETURNING *
                """,
                (digest, now or utcnow()),
            ).fetchone()
        return self._row_to_account(row) if row else None

    # refresh tokens -----------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, account_id, created_at, expires_at, created_by_ip)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.account_id,
                        record.created_at,
                        record.expires_at,
                        record.created_by_ip,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for refresh token",
                {"account_id": record.account_id},
            )
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE account_id = %s ORDER BY created_at DESC",
                (account_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def revoke_refresh_token(
        self,
        token: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        replaced_by_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        # Single conditional UPDATE so only one concurrent redeemer gets a row back
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s,
                    revoked_by_ip = %s,
                    revoked_reason = %s,
                    replaced_by_token = %s
                WHERE token = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, revoked_by_ip, reason, replaced_by_token, token, now),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def set_replaced_by(self, token: str, replaced_by_token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET replaced_by_token = %s WHERE token = %s",
                (replaced_by_token, token),
            )

    def revoke_account_refresh_tokens(
        self,
        account_id: str,
        *,
        reason: str,
        revoked_by_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by_ip = %s, revoked_reason = %s
                WHERE account_id = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING token
                """,
                (now, revoked_by_ip, reason, account_id, now),
            ).fetchall()
        return len(rows)

    def count_active_refresh_tokens(
        self, account_id: str, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS active
                FROM refresh_token
                WHERE account_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (account_id, now or utcnow()),
            ).fetchone()
        return int(row["active"]) if row else 0

    def purge_stale_refresh_tokens(
        self, retention: timedelta, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            rows: List[Any] = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expires_at <= %s
                   OR (revoked_at IS NOT NULL AND revoked_at < %s)
                RETURNING token
                """,
                (now, now - retention),
            ).fetchall()
        purged = len(rows)
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged
