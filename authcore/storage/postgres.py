from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, normalize_email
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    BackupCode,
    EventType,
    Role,
    SecurityEvent,
    Session,
    Severity,
    SmsCode,
    TokenPurpose,
    User,
    VerificationToken,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT,
        phone TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        name TEXT PRIMARY KEY,
        description TEXT NOT NULL DEFAULT '',
        permissions TEXT[] NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_user_role (
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        role_name TEXT NOT NULL REFERENCES auth_role(name) ON DELETE CASCADE,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, role_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        CHECK (expires_at > created_at)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS backup_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sms_code (
        phone TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        user_id TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_created_idx ON security_event (created_at)",
]

_USER_COLUMNS = """
    u.*, ARRAY(
        SELECT ur.role_name FROM auth_user_role ur
        WHERE ur.user_id = u.id ORDER BY ur.assigned_at
    ) AS roles
"""

_SESSION_COLUMNS = (
    "id, user_id, token, refresh_token, created_at, expires_at, last_used_at, ip_addr, user_agent"
)


class PostgresStore:
    """PostgreSQL-backed implementation of the authentication store.

    Atomicity comes from the database: the failed-attempt counter is a
    single row-locking UPDATE, backup-code consumption runs under
    ``SELECT ... FOR UPDATE`` and SMS/verification tokens are consumed
    with ``DELETE ... RETURNING``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        cipher: Optional[SecretCipher] = None,
        pool: Optional[ConnectionPool] = None,
        connect_timeout: float = 5.0,
        statement_timeout: Optional[float] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = cipher
        self.connect_timeout = connect_timeout
        conn_kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if statement_timeout:
            # Server-side cap so a statement abandoned by the caller rolls back
            conn_kwargs["options"] = f"-c statement_timeout={int(statement_timeout * 1000)}"
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs=conn_kwargs,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        secret = row.get("two_factor_secret")
        if self._cipher is not None:
            secret = self._cipher.decrypt(secret)
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            phone=row.get("phone"),
            email_verified=bool(row.get("email_verified")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=secret,
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            roles=list(row.get("roles") or []),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            refresh_token=row["refresh_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used_at=row["last_used_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _row_to_event(row: Dict[str, Any]) -> SecurityEvent:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {}
        return SecurityEvent(
            id=row["id"],
            type=EventType(row["type"]),
            severity=Severity(row["severity"]),
            user_id=row.get("user_id"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            metadata=metadata,
            created_at=row["created_at"],
        )

    # principals
    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        secret = user.two_factor_secret
        if self._cipher is not None:
            secret = self._cipher.encrypt(secret)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_user (id, email, password_hash, name, phone, email_verified,
                        two_factor_enabled, two_factor_secret, failed_attempts, locked_until,
                        last_login_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        user.password_hash,
                        user.name,
                        user.phone,
                        user.email_verified,
                        user.two_factor_enabled,
                        secret,
                        user.failed_attempts,
                        user.locked_until,
                        user.last_login_at,
                        user.created_at,
                    ),
                )
                for role_name in user.roles:
                    conn.execute(
                        "INSERT INTO auth_user_role (user_id, role_name) VALUES (%s, %s)",
                        (user.id, role_name),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"roles": list(user.roles)})
        user.email = email
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user u WHERE u.id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user u WHERE u.email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )

    def mark_email_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET email_verified = TRUE WHERE id = %s", (user_id,)
            )

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str]
    ) -> None:
        stored = self._cipher.encrypt(secret) if self._cipher is not None else secret
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET two_factor_enabled = %s, two_factor_secret = %s WHERE id = %s",
                (enabled, stored, user_id),
            )

    def assign_role(self, user_id: str, role_name: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_user_role (user_id, role_name) VALUES (%s, %s)
                    ON CONFLICT (user_id, role_name) DO NOTHING
                    """,
                    (user_id, role_name),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role missing", {"user_id": user_id, "role": role_name}
            )

    # lockout
    def register_failed_attempt(
        self, user_id: str, threshold: int, lock_until: datetime
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH prev AS (
                    SELECT id, failed_attempts + 1 AS attempts
                    FROM auth_user WHERE id = %(user_id)s FOR UPDATE
                )
                UPDATE auth_user u SET
                    failed_attempts = CASE WHEN prev.attempts >= %(threshold)s
                        THEN 0 ELSE prev.attempts END,
                    locked_until = CASE WHEN prev.attempts >= %(threshold)s
                        THEN %(lock_until)s ELSE u.locked_until END
                FROM prev WHERE u.id = prev.id
                RETURNING prev.attempts AS attempts
                """,
                {"user_id": user_id, "threshold": threshold, "lock_until": lock_until},
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["attempts"])

    def record_successful_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_user
                SET failed_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                """,
                (at, user_id),
            )

    def set_lock(self, user_id: str, locked_until: Optional[datetime]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET failed_attempts = 0, locked_until = %s WHERE id = %s",
                (locked_until, user_id),
            )

    # roles
    def upsert_role(self, role: Role) -> Role:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_role (name, description, permissions) VALUES (%s, %s, %s)
                ON CONFLICT (name) DO UPDATE
                SET description = EXCLUDED.description, permissions = EXCLUDED.permissions
                """,
                (role.name, role.description, list(role.permissions)),
            )
        return role

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name, description, permissions FROM auth_role WHERE name = %s",
                (name,),
            ).fetchone()
        if not row:
            return None
        return Role(row["name"], row.get("description") or "", list(row["permissions"] or []))

    def list_roles(self, names: Optional[Sequence[str]] = None) -> List[Role]:
        with self._connect() as conn:
            if names is None:
                rows = conn.execute(
                    "SELECT name, description, permissions FROM auth_role ORDER BY name"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT name, description, permissions FROM auth_role WHERE name = ANY(%s)",
                    (list(names),),
                ).fetchall()
        return [
            Role(r["name"], r.get("description") or "", list(r["permissions"] or []))
            for r in rows
        ]

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO auth_session ({_SESSION_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.refresh_token,
                        session.created_at,
                        session.expires_at,
                        session.last_used_at,
                        session.ip_addr,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET last_used_at = GREATEST(last_used_at, %s)
                WHERE id = %s RETURNING id
                """,
                (at, session_id),
            ).fetchone()
        return row is not None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE id = %s RETURNING id", (session_id,)
            ).fetchone()
        return row is not None

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM auth_session
                WHERE user_id = %s AND (%s::text IS NULL OR id <> %s)
                RETURNING id
                """,
                (user_id, except_session_id, except_session_id),
            ).fetchall()
        return len(rows)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s "
                "ORDER BY last_used_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_sessions_created_since(
        self, user_id: str, since: datetime
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE user_id = %s AND created_at >= %s ORDER BY created_at DESC",
                (user_id, since),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s RETURNING id", (now,)
            ).fetchall()
        return len(rows)

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
                    for code in codes:
                        conn.execute(
                            """
                            INSERT INTO backup_code (id, user_id, code_hash, used, used_at, created_at)
                            VALUES (%s, %s, %s, %s, %s, %s)
                            """,
                            (
                                code.id,
                                user_id,
                                code.code_hash,
                                code.used,
                                code.used_at,
                                code.created_at,
                            ),
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def consume_backup_code(
        self, user_id: str, matches: Callable[[str], bool], used_at: datetime
    ) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    """
                    SELECT id, code_hash FROM backup_code
                    WHERE user_id = %s AND used = FALSE
                    ORDER BY created_at
                    FOR UPDATE
                    """,
                    (user_id,),
                ).fetchall()
                for row in rows:
                    if matches(row["code_hash"]):
                        conn.execute(
                            "UPDATE backup_code SET used = TRUE, used_at = %s WHERE id = %s",
                            (used_at, row["id"]),
                        )
                        return True
        return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM backup_code WHERE user_id = %s AND used = FALSE",
                (user_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def delete_backup_codes(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))

    # sms codes
    def replace_sms_code(self, sms: SmsCode) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sms_code (phone, code, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (phone) DO UPDATE
                SET code = EXCLUDED.code, expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at
                """,
                (sms.phone, sms.code, sms.expires_at, sms.created_at),
            )

    def consume_sms_code(self, phone: str, code: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM sms_code
                WHERE phone = %s AND code = %s AND expires_at > %s
                RETURNING phone
                """,
                (phone, code, now),
            ).fetchone()
        return row is not None

    def delete_expired_sms_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM sms_code WHERE expires_at <= %s RETURNING phone", (now,)
            ).fetchall()
        return len(rows)

    # verification tokens
    def save_verification_token(self, token: VerificationToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification_token (token_hash, user_id, purpose, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        token.token_hash,
                        token.user_id,
                        token.purpose.value,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": token.user_id})

    def consume_verification_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM verification_token
                WHERE token_hash = %s AND purpose = %s
                RETURNING user_id, expires_at
                """,
                (token_hash, purpose.value),
            ).fetchone()
        if not row or row["expires_at"] <= now:
            return None
        return row["user_id"]

    # audit log
    def append_security_event(self, event: SecurityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, type, severity, user_id, ip_addr, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.type.value,
                    event.severity.value,
                    event.user_id,
                    event.ip_addr,
                    event.user_agent,
                    json.dumps(event.metadata, default=str),
                    event.created_at,
                ),
            )

    def list_security_events(
        self,
        since: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        query = "SELECT * FROM security_event"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_event(r) for r in rows]
