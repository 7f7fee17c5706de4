from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authwarden.logging import get_logger
from authwarden.storage.errors import ConstraintViolation
from authwarden.storage.models import Session, UserAccount

_USER_COLUMNS = (
    "email",
    "username",
    "first_name",
    "last_name",
    "password_hash",
    "role",
    "is_verified",
    "verification_token",
    "verification_expires_at",
    "failed_login_count",
    "locked_until",
    "reset_token",
    "reset_expires_at",
    "last_login_at",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_token TEXT,
        verification_expires_at TIMESTAMPTZ,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        reset_token TEXT,
        reset_expires_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_user_verification_token_idx ON auth_user (verification_token)",
    "CREATE INDEX IF NOT EXISTS auth_user_reset_token_idx ON auth_user (reset_token)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        seq BIGSERIAL,
        user_id UUID NOT NULL REFERENCES auth_user(id),
        refresh_token_ref TEXT,
        is_valid BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        invalidated_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_valid_idx ON auth_session (user_id, is_valid)",
)


def _conflict_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    return "username" if "username" in constraint else "email"


class PostgresStore:
    """Postgres-backed credential and session store.

    Lockout counters are incremented in SQL so concurrent failed logins for
    the same account never lose an update.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the ``auth_user`` and ``auth_session`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> UserAccount:
        return UserAccount(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            password_hash=row["password_hash"],
            role=row.get("role") or "user",
            is_verified=bool(row.get("is_verified", False)),
            verification_token=row.get("verification_token"),
            verification_expires_at=row.get("verification_expires_at"),
            failed_login_count=int(row.get("failed_login_count") or 0),
            locked_until=row.get("locked_until"),
            reset_token=row.get("reset_token"),
            reset_expires_at=row.get("reset_expires_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            refresh_token_ref=row.get("refresh_token_ref"),
            is_valid=bool(row.get("is_valid", True)),
            invalidated_at=row.get("invalidated_at"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            seq=int(row.get("seq") or 0),
        )

    # users
    def create_user(self, user: UserAccount) -> UserAccount:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_user (
                        id, email, username, first_name, last_name, password_hash,
                        role, is_verified, verification_token,
                        verification_expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        user.email.lower(),
                        user.username,
                        user.first_name,
                        user.last_name,
                        user.password_hash,
                        user.role,
                        user.is_verified,
                        user.verification_token,
                        user.verification_expires_at,
                        user.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _conflict_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def _fetch_user(self, where: str, params: tuple) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM auth_user WHERE {where}", params).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        return self._fetch_user("email = %s", (email.strip().lower(),))

    def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        return self._fetch_user("username = %s", (username.strip(),))

    def get_user_by_verification_token(
        self, token: str, now: datetime
    ) -> Optional[UserAccount]:
        return self._fetch_user(
            "verification_token = %s AND verification_expires_at > %s", (token, now)
        )

    def get_user_by_reset_token(self, token: str, now: datetime) -> Optional[UserAccount]:
        return self._fetch_user("reset_token = %s AND reset_expires_at > %s", (token, now))

    def update_user_fields(self, user_id: str, **changes) -> Optional[UserAccount]:
        unknown = set(changes) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not changes:
            return self.get_user(user_id)
        # column names come from the whitelist above, values are bound
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = tuple(changes.values()) + (user_id,)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE auth_user SET {assignments}, updated_at = now() "
                    "WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _conflict_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row) if row else None

    def increment_failed_login_count(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET failed_login_count = failed_login_count + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_login_count
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return int(row["failed_login_count"])

    # sessions
    def create_session(
        self,
        user_id: str,
        *,
        ttl_minutes: int,
        refresh_token_ref: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: datetime | None = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            refresh_token_ref=refresh_token_ref,
            now=now,
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_token_ref, created_at, expires_at,
                        user_agent, ip_addr
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_token_ref,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_valid_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_valid AND expires_at > %s
                ORDER BY created_at ASC, seq ASC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def set_session_refresh_ref(self, session_id: str, refresh_token_ref: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET refresh_token_ref = %s
                WHERE id = %s AND is_valid
                RETURNING id
                """,
                (refresh_token_ref, session_id),
            ).fetchone()
        return row is not None

    def invalidate_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET is_valid = FALSE, invalidated_at = %s
                WHERE id = %s AND is_valid
                RETURNING id
                """,
                (now, session_id),
            ).fetchone()
        return row is not None

    def invalidate_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: str | None = None
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET is_valid = FALSE, invalidated_at = %s
                WHERE user_id = %s AND is_valid AND (%s::uuid IS NULL OR id <> %s::uuid)
                RETURNING id
                """,
                (now, user_id, except_session_id, except_session_id),
            ).fetchall()
        return len(rows)
