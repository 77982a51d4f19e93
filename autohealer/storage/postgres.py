from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from psycopg import Rollback, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from autohealer.logging import get_logger
from autohealer.storage.common import normalize_email
from autohealer.storage.errors import ConstraintViolation, StaleRecordError
from autohealer.storage.models import (
    AuditEvent,
    OneTimeToken,
    Role,
    Session,
    User,
    utcnow,
)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'viewer',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        password_changed_at TIMESTAMPTZ,
        must_change_password BOOLEAN NOT NULL DEFAULT FALSE,
        password_history TEXT[] NOT NULL DEFAULT '{}',
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        mfa_backup_codes TEXT[] NOT NULL DEFAULT '{}',
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        lockout_until TIMESTAMPTZ,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_token_hash TEXT NOT NULL,
        refresh_token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        device_fingerprint TEXT,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_access_idx ON auth_session (access_token_hash)",
    "CREATE INDEX IF NOT EXISTS auth_session_refresh_idx ON auth_session (refresh_token_hash)",
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        id UUID PRIMARY KEY,
        kind TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id UUID PRIMARY KEY,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        user_id UUID,
        resource_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        severity TEXT NOT NULL DEFAULT 'low',
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_action_idx ON audit_event (action, resource_id, created_at DESC)",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed auth store.

    Every decision that depends on current row state is taken inside the
    database, either as a single conditional ``UPDATE ... RETURNING`` or
    inside a transaction holding ``SELECT ... FOR UPDATE``.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
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
        """Create auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=4)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            role=row.get("role", Role.VIEWER),
            is_active=row.get("is_active", True),
            password_changed_at=row.get("password_changed_at"),
            must_change_password=row.get("must_change_password", False),
            password_history=list(row.get("password_history") or []),
            mfa_enabled=row.get("mfa_enabled", False),
            mfa_secret=row.get("mfa_secret"),
            mfa_backup_codes=list(row.get("mfa_backup_codes") or []),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            is_locked=row.get("is_locked", False),
            lockout_until=row.get("lockout_until"),
            email_verified=row.get("email_verified", False),
            email_verified_at=row.get("email_verified_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token_hash=row["access_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity_at=row["last_activity_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_fingerprint=row.get("device_fingerprint"),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        details = row.get("details")
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEvent(
            id=str(row["id"]),
            action=row["action"],
            resource=row["resource"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            resource_id=row.get("resource_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            severity=row.get("severity", "low"),
            details=details,
            created_at=row["created_at"],
        )

    def _update_user(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._user_from_row(row) if row else None

    @staticmethod
    def _insert_audit(conn, event: AuditEvent) -> None:
        conn.execute(
            """
            INSERT INTO audit_event (id, action, resource, user_id, resource_id, ip_address, user_agent, severity, details, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                event.id,
                event.action,
                event.resource,
                event.user_id,
                event.resource_id,
                event.ip_address,
                event.user_agent,
                event.severity,
                json.dumps(event.details) if event.details is not None else None,
                event.created_at,
            ),
        )

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = Role.VIEWER,
        is_active: bool = True,
        must_change_password: bool = False,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, password_hash, role, is_active,
                        must_change_password, password_changed_at, email_verified, email_verified_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        username,
                        password_hash,
                        role,
                        is_active,
                        must_change_password,
                        now,
                        email_verified,
                        now if email_verified else None,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._update_user(
            "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
            (role, user_id),
        )

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._update_user(
            "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
            (is_active, user_id),
        )

    # lockout
    def record_failed_login(
        self, user_id: str, *, threshold: int, lockout_until: datetime
    ) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user
            SET failed_login_attempts = failed_login_attempts + 1,
                is_locked = CASE WHEN failed_login_attempts + 1 >= %s THEN TRUE ELSE is_locked END,
                lockout_until = CASE WHEN NOT is_locked AND failed_login_attempts + 1 >= %s THEN %s ELSE lockout_until END,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (threshold, threshold, lockout_until, user_id),
        )

    def expire_lockout(self, user_id: str, now: datetime) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_locked = FALSE, lockout_until = NULL, failed_login_attempts = 0, updated_at = now()
                WHERE id = %s AND is_locked AND lockout_until IS NOT NULL AND lockout_until <= %s
                RETURNING id
                """,
                (user_id, now),
            ).fetchone()
        return row is not None

    def lock_user(
        self, user_id: str, *, lockout_until: datetime, failed_attempts: int
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._update_user(
            """
            UPDATE app_user
            SET is_locked = TRUE, lockout_until = %s, failed_login_attempts = %s, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (lockout_until, failed_attempts, user_id),
        )

    def clear_lockout(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._update_user(
            """
            UPDATE app_user
            SET is_locked = FALSE, lockout_until = NULL, failed_login_attempts = 0, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (user_id,),
        )

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user
            SET failed_login_attempts = 0, is_locked = FALSE, lockout_until = NULL,
                last_login_at = %s, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (now, user_id),
        )

    def lockout_counts(self, now: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE is_locked AND (lockout_until IS NULL OR lockout_until > %s)) AS locked_accounts,
                    COUNT(*) FILTER (WHERE failed_login_attempts > 0) AS accounts_with_failures
                FROM app_user
                """,
                (now,),
            ).fetchone()
        return {
            "locked_accounts": int(row["locked_accounts"] or 0),
            "accounts_with_failures": int(row["accounts_with_failures"] or 0),
        }

    # passwords
    def apply_password_change(
        self,
        user_id: str,
        *,
        expected_hash: str,
        password_hash: str,
        password_history: List[str],
        changed_at: datetime,
        keep_session_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET password_hash = %s, password_history = %s, password_changed_at = %s,
                        must_change_password = FALSE, updated_at = now()
                    WHERE id = %s AND password_hash = %s
                    RETURNING id
                    """,
                    (password_hash, password_history, changed_at, user_id, expected_hash),
                ).fetchone()
                if not row:
                    raise StaleRecordError("user", user_id)
                result = conn.execute(
                    """
                    UPDATE auth_session SET revoked_at = %s
                    WHERE user_id = %s AND revoked_at IS NULL AND id IS DISTINCT FROM %s
                    """,
                    (changed_at, user_id, keep_session_id),
                )
                return result.rowcount

    def issue_one_time_token(self, kind: str, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM one_time_token WHERE kind = %s AND user_id = %s AND used_at IS NULL",
                        (kind, token.user_id),
                    )
                    conn.execute(
                        """
                        INSERT INTO one_time_token (id, kind, user_id, token_hash, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            token.id,
                            kind,
                            token.user_id,
                            token.token_hash,
                            token.expires_at,
                            token.created_at,
                        ),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": token.user_id})
        return token

    @staticmethod
    def _redeem_token(conn, kind: str, token_hash: str, now: datetime) -> Optional[str]:
        row = conn.execute(
            """
            UPDATE one_time_token SET used_at = %s
            WHERE kind = %s AND token_hash = %s AND used_at IS NULL AND expires_at > %s
            RETURNING user_id
            """,
            (now, kind, token_hash, now),
        ).fetchone()
        return str(row["user_id"]) if row else None

    def complete_password_reset(
        self, token_hash: str, *, password_hash: str, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            with conn.transaction():
                user_id = self._redeem_token(conn, "password_reset", token_hash, now)
                if not user_id:
                    return None
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET password_hash = %s, password_history = '{}', password_changed_at = %s,
                        must_change_password = FALSE, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (password_hash, now, user_id),
                ).fetchone()
                conn.execute(
                    "UPDATE auth_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                    (now, user_id),
                )
        return self._user_from_row(row) if row else None

    def complete_email_verification(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            with conn.transaction():
                user_id = self._redeem_token(
                    conn, "email_verification", token_hash, now
                )
                if not user_id:
                    return None
                row = conn.execute(
                    """
                    UPDATE app_user SET email_verified = TRUE, email_verified_at = %s, updated_at = now()
                    WHERE id = %s AND NOT email_verified
                    RETURNING *
                    """,
                    (now, user_id),
                ).fetchone()
                if row is None:
                    # Already verified; leave the token unused
                    raise Rollback()
        return self._user_from_row(row) if row else None

    # mfa
    def begin_mfa_setup(
        self, user_id: str, *, secret: str, backup_codes: List[str]
    ) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user SET mfa_secret = %s, mfa_backup_codes = %s, updated_at = now()
            WHERE id = %s AND NOT mfa_enabled
            RETURNING *
            """,
            (secret, backup_codes, user_id),
        )

    def enable_mfa(self, user_id: str) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user SET mfa_enabled = TRUE, updated_at = now()
            WHERE id = %s AND NOT mfa_enabled AND mfa_secret IS NOT NULL
            RETURNING *
            """,
            (user_id,),
        )

    def disable_mfa(self, user_id: str) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user SET mfa_enabled = FALSE, mfa_secret = NULL, mfa_backup_codes = '{}', updated_at = now()
            WHERE id = %s AND mfa_enabled
            RETURNING *
            """,
            (user_id,),
        )

    def replace_backup_codes(
        self, user_id: str, backup_codes: List[str]
    ) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user SET mfa_backup_codes = %s, updated_at = now()
            WHERE id = %s AND mfa_enabled
            RETURNING *
            """,
            (backup_codes, user_id),
        )

    def consume_backup_code(
        self, user_id: str, matches: Callable[[str], bool]
    ) -> Optional[int]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT mfa_backup_codes FROM app_user WHERE id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not row:
                    return None
                codes = list(row["mfa_backup_codes"] or [])
                for index, stored in enumerate(codes):
                    if matches(stored):
                        del codes[index]
                        conn.execute(
                            "UPDATE app_user SET mfa_backup_codes = %s, updated_at = now() WHERE id = %s",
                            (codes, user_id),
                        )
                        return len(codes)
        return None

    def emergency_disable_mfa(
        self, target_user_id: str, *, audit_event: AuditEvent, now: datetime
    ) -> Optional[int]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET mfa_enabled = FALSE, mfa_secret = NULL, mfa_backup_codes = '{}', updated_at = now()
                    WHERE id = %s AND is_active AND mfa_enabled
                    RETURNING id
                    """,
                    (target_user_id,),
                ).fetchone()
                if not row:
                    return None
                result = conn.execute(
                    "UPDATE auth_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                    (now, target_user_id),
                )
                self._insert_audit(conn, audit_event)
                return result.rowcount

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, access_token_hash, refresh_token_hash, created_at,
                        expires_at, last_activity_at, ip_address, user_agent, device_fingerprint)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.access_token_hash,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.ip_address,
                        session.user_agent,
                        session.device_fingerprint,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def _get_session_where(self, column: str, value: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_session WHERE {column} = %s", (value,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        return self._get_session_where("id", session_id)

    def get_session_by_access_hash(self, token_hash: str) -> Optional[Session]:
        return self._get_session_where("access_token_hash", token_hash)

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]:
        return self._get_session_where("refresh_token_hash", token_hash)

    def touch_session(
        self, session_id: str, access_token_hash: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = %s
                WHERE id = %s AND access_token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, session_id, access_token_hash, now),
            )
            return result.rowcount > 0

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET access_token_hash = %s, refresh_token_hash = %s, last_activity_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (
                    access_token_hash,
                    refresh_token_hash,
                    now,
                    session_id,
                    expected_refresh_hash,
                    now,
                ),
            )
            return result.rowcount > 0

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        if not _is_uuid(session_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (now, session_id),
            )
            return result.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL AND id IS DISTINCT FROM %s
                """,
                (now, user_id, except_session_id),
            )
            return result.rowcount

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s OR revoked_at IS NOT NULL",
                (now,),
            )
            return result.rowcount

    def session_counts(self, now: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE revoked_at IS NULL AND expires_at > %s) AS active,
                    COUNT(*) FILTER (WHERE revoked_at IS NULL AND expires_at <= %s) AS expired,
                    COUNT(*) FILTER (WHERE revoked_at IS NOT NULL) AS revoked
                FROM auth_session
                """,
                (now, now),
            ).fetchone()
        return {key: int(row[key] or 0) for key in ("active", "expired", "revoked")}

    # audit
    def record_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            self._insert_audit(conn, event)
        return event

    def latest_audit_event(
        self, action: str, resource_id: str
    ) -> Optional[AuditEvent]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM audit_event WHERE action = %s AND resource_id = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (action, resource_id),
            ).fetchone()
        return self._audit_from_row(row) if row else None

    def list_audit_events(self, action: str, limit: int = 50) -> List[AuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_event WHERE action = %s ORDER BY created_at DESC LIMIT %s",
                (action, limit),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]
