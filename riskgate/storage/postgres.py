from __future__ import annotations

import uuid
from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from riskgate.logging import get_logger
from riskgate.storage.common import normalize_identifier
from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.models import (
    ROLE_USER,
    PasswordResetRequest,
    Profile,
    ResetStatus,
    Session,
    User,
    UserSummary,
    utcnow,
)

_REQUIRED_TABLES = (
    "app_user",
    "user_profile",
    "role",
    "user_role",
    "auth_session",
    "password_reset_request",
)

_UNIQUE_FIELDS = {
    "app_user_username_lower_idx": "username",
    "app_user_email_lower_idx": "email",
}

_USER_SELECT = """
    SELECT u.*, p.full_name, p.bio, p.avatar,
           COALESCE(array_agg(r.name ORDER BY r.name) FILTER (WHERE r.name IS NOT NULL), '{}') AS roles
    FROM app_user u
    LEFT JOIN user_profile p ON p.user_id = u.id
    LEFT JOIN user_role ur ON ur.user_id = u.id
    LEFT JOIN role r ON r.id = ur.role_id
"""

_USER_GROUP = " GROUP BY u.id, p.user_id"

_RESET_SELECT = """
    SELECT rr.*,
           tu.username AS target_username, tu.email AS target_email, tp.full_name AS target_full_name,
           vu.username AS validator_username, vu.email AS validator_email, vp.full_name AS validator_full_name
    FROM password_reset_request rr
    LEFT JOIN app_user tu ON tu.id = rr.user_id
    LEFT JOIN user_profile tp ON tp.user_id = rr.user_id
    LEFT JOIN app_user vu ON vu.id = rr.validated_by_id
    LEFT JOIN user_profile vp ON vp.user_id = rr.validated_by_id
"""


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# Connection bound by transaction(); _connect() reuses it while set
_tx_conn: ContextVar[Optional[Connection]] = ContextVar("riskgate_tx_conn", default=None)


class PostgresStore:
    """Postgres-backed identity store on a psycopg 3 connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        conn = _tx_conn.get()
        if conn is not None:
            return nullcontext(conn)
        return self.pool.connection()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if _tx_conn.get() is not None:
            # nested: join the outer unit of work
            yield
            return
        with self.pool.connection() as conn, conn.transaction():
            token = _tx_conn.set(conn)
            try:
                yield
            finally:
                _tx_conn.reset(token)

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the identity tables have not been migrated."""

        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_identity.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        field = _UNIQUE_FIELDS.get(constraint)
        if field:
            return ConstraintViolation(f"{field} already exists", {"field": field})
        return ConstraintViolation("unique constraint violated", {"constraint": constraint})

    # row mapping
    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        profile = None
        if row.get("full_name") is not None:
            profile = Profile(
                full_name=row["full_name"], bio=row.get("bio"), avatar=row.get("avatar")
            )
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            is_active=bool(row["is_active"]),
            is_verified=bool(row["is_verified"]),
            must_change_password=bool(row["must_change_password"]),
            password_changed_at=row.get("password_changed_at"),
            totp_secret=row.get("totp_secret"),
            totp_enabled=bool(row["totp_enabled"]),
            roles=list(row.get("roles") or []),
            profile=profile,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            access_token_expires_at=row["access_token_expires_at"],
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            device_id=row.get("device_id"),
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _reset_from_row(row: dict[str, Any]) -> PasswordResetRequest:
        user = None
        if row.get("user_id") and row.get("target_username"):
            user = UserSummary(
                id=str(row["user_id"]),
                username=row["target_username"],
                email=row["target_email"],
                full_name=row.get("target_full_name"),
            )
        validator = None
        if row.get("validated_by_id") and row.get("validator_username"):
            validator = UserSummary(
                id=str(row["validated_by_id"]),
                username=row["validator_username"],
                email=row["validator_email"],
                full_name=row.get("validator_full_name"),
            )
        return PasswordResetRequest(
            id=str(row["id"]),
            identifier=row["identifier"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            status=ResetStatus(row["status"]),
            requested_at=row["requested_at"],
            validated_by_id=str(row["validated_by_id"]) if row.get("validated_by_id") else None,
            validated_at=row.get("validated_at"),
            completed_at=row.get("completed_at"),
            user=user,
            validated_by=validator,
        )

    # users
    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(_USER_SELECT + where + _USER_GROUP, params).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._fetch_user(" WHERE u.id = %s", (user_id,))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user(
            " WHERE lower(u.username) = %s", (normalize_identifier(username),)
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user(" WHERE lower(u.email) = %s", (normalize_identifier(email),))

    def find_user_by_identifier(self, identifier: str) -> Optional[User]:
        key = normalize_identifier(identifier)
        if not key:
            return None
        return self._fetch_user(
            " WHERE lower(u.username) = %s OR lower(u.email) = %s", (key, key)
        )

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        roles: Iterable[str] = (ROLE_USER,),
        is_active: bool = False,
        is_verified: bool = False,
        password_changed_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self.transaction(), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, is_active, is_verified,
                                          password_changed_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        username,
                        email,
                        password_hash,
                        is_active,
                        is_verified,
                        password_changed_at or now,
                        now,
                        now,
                    ),
                )
                if full_name:
                    conn.execute(
                        "INSERT INTO user_profile (user_id, full_name) VALUES (%s, %s)",
                        (user_id, full_name),
                    )
                for role in dict.fromkeys(roles):
                    inserted = conn.execute(
                        """
                        INSERT INTO user_role (user_id, role_id)
                        SELECT %s, id FROM role WHERE name = %s
                        RETURNING role_id
                        """,
                        (user_id, role),
                    ).fetchone()
                    if not inserted:
                        raise ConstraintViolation("unknown role", {"role": role})
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError("created user could not be read back")
        return user

    def update_user_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_active = COALESCE(%s, is_active),
                    is_verified = COALESCE(%s, is_verified),
                    updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (is_active, is_verified, user_id),
            ).fetchone()
        return self.get_user(user_id) if row else None

    def set_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        must_change_password: bool,
        password_changed_at: datetime,
    ) -> None:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, must_change_password = %s,
                    password_changed_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (password_hash, must_change_password, password_changed_at, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for password", {"user_id": user_id})

    def set_totp(self, user_id: str, secret: Optional[str], *, enabled: bool) -> None:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET totp_secret = %s, totp_enabled = %s, updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (secret, enabled, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for totp", {"user_id": user_id})

    def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        try:
            with self.transaction(), self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user SET email = COALESCE(%s, email), updated_at = now()
                    WHERE id = %s
                    RETURNING username
                    """,
                    (email, user_id),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    INSERT INTO user_profile (user_id, full_name, bio, avatar)
                    VALUES (%s, COALESCE(%s, %s), %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET full_name = COALESCE(%s, user_profile.full_name),
                        bio = COALESCE(%s, user_profile.bio),
                        avatar = COALESCE(%s, user_profile.avatar)
                    """,
                    (
                        user_id,
                        full_name,
                        row["username"],
                        bio,
                        avatar,
                        full_name,
                        bio,
                        avatar,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return self.get_user(user_id)

    # sessions
    def upsert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, access_token, access_token_expires_at,
                                              refresh_token_hash, device_id, device_name, user_agent,
                                              ip_address, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET access_token = EXCLUDED.access_token,
                        access_token_expires_at = EXCLUDED.access_token_expires_at,
                        refresh_token_hash = EXCLUDED.refresh_token_hash,
                        device_id = EXCLUDED.device_id,
                        device_name = EXCLUDED.device_name,
                        user_agent = EXCLUDED.user_agent,
                        ip_address = EXCLUDED.ip_address,
                        expires_at = EXCLUDED.expires_at,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.access_token,
                        session.access_token_expires_at,
                        session.refresh_token_hash,
                        session.device_id,
                        session.device_name,
                        session.user_agent,
                        session.ip_address,
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": session.user_id}
            ) from exc
        return self._session_from_row(row)

    def rotate_session(
        self, user_id: str, expected_refresh_hash: str, session: Session
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET access_token = %s,
                    access_token_expires_at = %s,
                    refresh_token_hash = %s,
                    device_id = %s,
                    device_name = %s,
                    user_agent = %s,
                    ip_address = %s,
                    expires_at = %s,
                    updated_at = %s
                WHERE user_id = %s AND refresh_token_hash = %s
                RETURNING *
                """,
                (
                    session.access_token,
                    session.access_token_expires_at,
                    session.refresh_token_hash,
                    session.device_id,
                    session.device_name,
                    session.user_agent,
                    session.ip_address,
                    session.expires_at,
                    session.updated_at,
                    user_id,
                    expected_refresh_hash,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def _fetch_session(self, where: str, params: tuple) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_session WHERE " + where, params).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_for_user(self, user_id: str) -> Optional[Session]:
        return self._fetch_session("user_id = %s", (user_id,))

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        if not access_token:
            return None
        return self._fetch_session("access_token = %s", (access_token,))

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        if not refresh_token_hash:
            return None
        return self._fetch_session("refresh_token_hash = %s", (refresh_token_hash,))

    def delete_session(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    # password reset requests
    def create_reset_request(
        self, identifier: str, user_id: Optional[str]
    ) -> PasswordResetRequest:
        request_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_request (id, user_id, identifier, status, requested_at)
                VALUES (%s, %s, %s, 'PENDING', %s)
                """,
                (request_id, user_id, identifier, utcnow()),
            )
        request = self.get_reset_request(request_id)
        if request is None:
            raise RuntimeError("created reset request could not be read back")
        return request

    def get_reset_request(self, request_id: str) -> Optional[PasswordResetRequest]:
        if not _is_uuid(request_id):
            return None
        with self._connect() as conn:
            row = conn.execute(_RESET_SELECT + " WHERE rr.id = %s", (request_id,)).fetchone()
        return self._reset_from_row(row) if row else None

    def list_reset_requests(
        self, status: Optional[ResetStatus] = None
    ) -> List[PasswordResetRequest]:
        query = _RESET_SELECT
        params: tuple = ()
        if status is not None:
            query += " WHERE rr.status = %s"
            params = (ResetStatus(status).value,)
        query += " ORDER BY rr.requested_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._reset_from_row(row) for row in rows]

    def mark_reset_completed(
        self, request_id: str, validated_by_id: str, at: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_request
                SET status = 'COMPLETED', validated_by_id = %s, validated_at = %s, completed_at = %s
                WHERE id = %s AND status = 'PENDING'
                RETURNING id
                """,
                (validated_by_id, at, at, request_id),
            ).fetchone()
        return row is not None
