from __future__ import annotations

from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from passgate.logging import get_logger, redact_email
from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import Credential, ScanAuthRecord, UserAccount

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        source TEXT NOT NULL DEFAULT 'email',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_credential (
        user_id TEXT PRIMARY KEY REFERENCES user_account(id),
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scan_auth (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        device_type TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store, user directory and scan-audit sink."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _credential_from_row(row: dict) -> Credential:
        return Credential(
            user_id=str(row["user_id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            salt=row["salt"],
            is_verified=bool(row.get("is_verified", True)),
            created_at=row["created_at"],
            last_updated_at=row.get("last_updated_at"),
        )

    def create_user(self, user_id: str, email: str, source: str = "email") -> UserAccount:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_account (id, email, source)
                    VALUES (%s, %s, %s)
                    RETURNING id, email, source, created_at
                    """,
                    (user_id, email, source),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists", {"email": redact_email(email)}
            ) from exc
        self.logger.info("user_created", user_id=user_id, source=source)
        return UserAccount(
            id=str(row["id"]),
            email=row["email"],
            source=row["source"],
            created_at=row["created_at"],
        )

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, source, created_at FROM user_account WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserAccount(
            id=str(row["id"]), email=row["email"], source=row["source"], created_at=row["created_at"]
        )

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, source, created_at FROM user_account WHERE email = %s",
                (email,),
            ).fetchone()
        if not row:
            return None
        return UserAccount(
            id=str(row["id"]), email=row["email"], source=row["source"], created_at=row["created_at"]
        )

    def user_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM email_credential WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def find_credential(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_credential WHERE email = %s", (email,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def find_credential_by_user(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def upsert_credential(self, record: Credential) -> Credential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO email_credential (user_id, email, password_hash, salt, is_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        salt = EXCLUDED.salt,
                        is_verified = EXCLUDED.is_verified,
                        last_updated_at = now()
                    RETURNING *
                    """,
                    (
                        record.user_id,
                        record.email,
                        record.password_hash,
                        record.salt,
                        record.is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email bound to another user", {"email": redact_email(record.email)}
            ) from exc
        return self._credential_from_row(row)

    def record_scan_auth(self, record: ScanAuthRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scan_auth (user_id, device_id, device_type, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (record.user_id, record.device_id, record.device_type, record.created_at),
            )

    def list_scan_auths(self, user_id: str) -> List[ScanAuthRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, device_id, device_type, created_at
                FROM scan_auth WHERE user_id = %s ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            ScanAuthRecord(
                user_id=str(row["user_id"]),
                device_id=row["device_id"],
                device_type=row["device_type"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
