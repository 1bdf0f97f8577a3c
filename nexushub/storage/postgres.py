from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from nexushub.logging import get_logger
from nexushub.storage.errors import ConstraintViolation
from nexushub.storage.models import (
    PROFILE_FIELDS,
    ROLE_USER,
    RefreshTokenRecord,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        first_name TEXT,
        last_name TEXT,
        avatar TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        jti UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)


def _as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps before they reach a TIMESTAMPTZ column."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _unique_field(exc: errors.UniqueViolation) -> str:
    """Name the column behind a unique violation from its constraint name."""
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "username" in constraint:
        return "username"
    if "jti" in constraint or "pkey" in constraint:
        return "jti"
    return "email"


class PostgresStore:
    """Postgres-backed credential store and refresh token ledger."""

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
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            role=row.get("role", ROLE_USER),
            is_active=row.get("is_active", True),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar=row.get("avatar"),
            created_at=_naive_utc(row.get("created_at")) or datetime.utcnow(),
            updated_at=_naive_utc(row.get("updated_at") or row.get("created_at"))
            or datetime.utcnow(),
        )

    @staticmethod
    def _refresh_token_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=str(row["jti"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=_naive_utc(row["expires_at"]),
            created_at=_naive_utc(row.get("created_at")) or datetime.utcnow(),
            revoked_at=_naive_utc(row.get("revoked_at")),
        )

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = ROLE_USER,
        is_active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, password_hash, role, is_active, first_name, last_name, avatar)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        username,
                        password_hash,
                        role,
                        is_active,
                        first_name,
                        last_name,
                        avatar,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]:
        """Return the first user whose email or username matches, email first."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE lower(email) = lower(%s) OR username = %s
                ORDER BY (lower(email) = lower(%s)) DESC
                LIMIT 1
                """,
                (email, username, email),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def _update_user(self, user_id: str, assignments: dict[str, Any]) -> Optional[User]:
        columns = ", ".join(f"{name} = %s" for name in assignments)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {columns}, updated_at = now() WHERE id = %s RETURNING *",
                (*assignments.values(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, {"password_hash": password_hash})

    def update_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]:
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"not a profile field: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_user(user_id)
        return self._update_user(user_id, fields)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, {"role": role})

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, {"is_active": is_active})

    # refresh token ledger
    def add_refresh_token(
        self, jti: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (jti, user_id, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (jti, user_id, token_hash, _as_utc(expires_at)),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token id exists", {"field": "jti"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return self._refresh_token_from_row(row)

    def get_refresh_token_record(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE jti = %s", (jti,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def list_refresh_tokens(
        self, user_id: str, *, include_revoked: bool = True
    ) -> List[RefreshTokenRecord]:
        query = "SELECT * FROM refresh_token WHERE user_id = %s"
        if not include_revoked:
            query += " AND revoked_at IS NULL"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def revoke_refresh_token(self, jti: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE jti = %s AND revoked_at IS NULL",
                (jti,),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if now is None:
                cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= now()")
            else:
                cur = conn.execute(
                    "DELETE FROM refresh_token WHERE expires_at <= %s", (_as_utc(now),)
                )
            deleted = cur.rowcount
        if deleted:
            self.logger.info("refresh_tokens_purged", count=deleted)
        return deleted
