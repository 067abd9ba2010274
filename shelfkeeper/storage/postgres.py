from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from shelfkeeper.logging import get_logger
from shelfkeeper.storage.errors import ConstraintViolation, StorageError
from shelfkeeper.storage.models import User, normalize_email, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    oauth_provider TEXT,
    oauth_id TEXT,
    email_verification_token TEXT UNIQUE,
    email_verification_expires TIMESTAMPTZ,
    reset_password_token TEXT UNIQUE,
    reset_password_expires TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (oauth_provider, oauth_id)
);
"""

_USER_COLUMNS = (
    "id, email, role, is_email_verified, oauth_provider, oauth_id, "
    "email_verification_token, email_verification_expires, "
    "reset_password_token, reset_password_expires, created_at, updated_at"
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed user store.

    Token consumption is a single ``UPDATE ... RETURNING`` so two concurrent
    requests presenting the same token cannot both succeed.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "oauth_id" if "oauth" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageError("database operation failed") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            oauth_provider=row.get("oauth_provider"),
            oauth_id=row.get("oauth_id"),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires=row.get("email_verification_expires"),
            reset_password_token=row.get("reset_password_token"),
            reset_password_expires=row.get("reset_password_expires"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _fetch_one(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where}", params
            ).fetchone()
        return self._row_to_user(row) if row else None

    # lookups
    def find_by_id(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_one("id = %s", (user_id,))

    def find_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one("email = %s", (normalize_email(email),))

    def find_by_oauth_id(self, provider: str, oauth_id: str) -> Optional[User]:
        return self._fetch_one(
            "oauth_provider = %s AND oauth_id = %s", (provider, oauth_id)
        )

    def find_by_verification_token(self, token: str) -> Optional[User]:
        return self._fetch_one("email_verification_token = %s", (token,))

    def find_by_reset_token(self, token: str) -> Optional[User]:
        return self._fetch_one("reset_password_token = %s", (token,))

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user ORDER BY created_at DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # writes
    def create(self, user: User, password_hash: Optional[str] = None) -> User:
        user.email = normalize_email(user.email)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO app_user (
                    id, email, password_hash, role, is_email_verified,
                    oauth_provider, oauth_id, email_verification_token,
                    email_verification_expires, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (
                    user.id,
                    user.email,
                    password_hash,
                    user.role,
                    user.is_email_verified,
                    user.oauth_provider,
                    user.oauth_id,
                    user.email_verification_token,
                    user.email_verification_expires,
                    user.created_at,
                    user.updated_at,
                ),
            ).fetchone()
        return self._row_to_user(row)

    def _update(
        self, user_id: str, assignments: str, params: tuple, extra_where: str = ""
    ) -> Optional[Dict[str, Any]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            return conn.execute(
                f"""
                UPDATE app_user
                SET {assignments},
                    updated_at = now()
                WHERE id = %s{extra_where}
                RETURNING {_USER_COLUMNS}
                """,
                params + (user_id,),
            ).fetchone()

    def set_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        """Store a fresh verification token unless the account is already verified."""
        row = self._update(
            user_id,
            "email_verification_token = %s, email_verification_expires = %s",
            (token, expires_at),
            " AND is_email_verified = FALSE",
        )
        if row:
            return self._row_to_user(row)
        if self.find_by_id(user_id) is None:
            raise StorageError("user not found", {"user_id": user_id})
        return None

    def set_reset_token(self, user_id: str, token: str, expires_at: datetime) -> User:
        row = self._update(
            user_id,
            "reset_password_token = %s, reset_password_expires = %s",
            (token, expires_at),
        )
        if not row:
            raise StorageError("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def link_oauth(self, user_id: str, provider: str, oauth_id: str) -> User:
        row = self._update(
            user_id,
            "oauth_provider = %s, oauth_id = %s, is_email_verified = TRUE",
            (provider, oauth_id),
        )
        if not row:
            raise StorageError("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def set_role(self, user_id: str, role: str) -> User:
        row = self._update(user_id, "role = %s", (role,))
        if not row:
            raise StorageError("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return row["password_hash"]

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        if not _is_uuid(user_id):
            raise StorageError("user not found for credentials", {"user_id": user_id})
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise StorageError("user not found for credentials", {"user_id": user_id})

    def consume_verification_token(self, token: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET is_email_verified = TRUE,
                    email_verification_token = NULL,
                    email_verification_expires = NULL,
                    updated_at = now()
                WHERE email_verification_token = %s
                  AND email_verification_expires > %s
                RETURNING {_USER_COLUMNS}
                """,
                (token, now),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def consume_reset_token(
        self, token: str, now: datetime, password_hash: str
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET password_hash = %s,
                    reset_password_token = NULL,
                    reset_password_expires = NULL,
                    updated_at = now()
                WHERE reset_password_token = %s
                  AND reset_password_expires > %s
                RETURNING {_USER_COLUMNS}
                """,
                (password_hash, token, now),
            ).fetchone()
        return self._row_to_user(row) if row else None
