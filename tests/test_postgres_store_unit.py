import uuid
from contextlib import contextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest

from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.models import ResetStatus, Session, utcnow
from riskgate.storage.postgres import PostgresStore, _is_uuid


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.dsn = "postgresql://unused"
    return store


def test_non_uuid_ids_short_circuit_without_a_query():
    store = _store()
    assert store.get_user("not-a-uuid") is None
    assert store.get_reset_request("42") is None
    assert _is_uuid(str(uuid.uuid4()))


def test_unique_violation_maps_to_field():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_email_lower_idx"))
    violation = PostgresStore._constraint_violation(exc)
    assert violation.field == "email"

    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="something_else"))
    violation = PostgresStore._constraint_violation(exc)
    assert violation.field is None
    assert violation.detail["constraint"] == "something_else"


def test_user_row_mapping():
    now = utcnow()
    user_id = uuid.uuid4()
    row = {
        "id": user_id,
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "hash",
        "is_active": True,
        "is_verified": False,
        "must_change_password": False,
        "password_changed_at": now,
        "totp_secret": None,
        "totp_enabled": False,
        "roles": ["ADMINISTRATOR", "USER"],
        "full_name": "Alice Example",
        "bio": None,
        "avatar": None,
        "created_at": now,
        "updated_at": now,
    }
    user = PostgresStore._user_from_row(row)
    assert user.id == str(user_id)
    assert user.roles == ["ADMINISTRATOR", "USER"]
    assert user.profile.full_name == "Alice Example"

    user = PostgresStore._user_from_row({**row, "full_name": None, "roles": None})
    assert user.profile is None
    assert user.roles == []


def test_reset_row_mapping_includes_summaries():
    now = utcnow()
    target, admin = uuid.uuid4(), uuid.uuid4()
    row = {
        "id": uuid.uuid4(),
        "identifier": "alice",
        "user_id": target,
        "status": "COMPLETED",
        "requested_at": now - timedelta(hours=1),
        "validated_by_id": admin,
        "validated_at": now,
        "completed_at": now,
        "target_username": "alice",
        "target_email": "alice@example.com",
        "target_full_name": "Alice Example",
        "validator_username": "root",
        "validator_email": "root@example.com",
        "validator_full_name": None,
    }
    request = PostgresStore._reset_from_row(row)
    assert request.status is ResetStatus.COMPLETED
    assert request.user.id == str(target)
    assert request.validated_by.username == "root"

    pending = PostgresStore._reset_from_row(
        {**row, "status": "PENDING", "validated_by_id": None, "validator_username": None}
    )
    assert pending.validated_by is None


class _Result:
    def __init__(self, row=None):
        self.row = row

    def fetchone(self):
        return self.row


class RecordingConnection:
    """Keeps inserted rows per table; rows written in a failed transaction are discarded."""

    def __init__(self, known_roles=("USER", "ADMINISTRATOR")):
        self.known_roles = set(known_roles)
        self.rows = {"app_user": [], "user_profile": [], "user_role": []}
        self.pending = None
        self.rolled_back = False
        self.statements = []

    @contextmanager
    def transaction(self):
        self.pending = {table: [] for table in self.rows}
        try:
            yield
        except BaseException:
            self.pending = None
            self.rolled_back = True
            raise
        for table, rows in self.pending.items():
            self.rows[table].extend(rows)
        self.pending = None

    def execute(self, sql, params=()):
        statement = " ".join(sql.split())
        self.statements.append((statement, params))
        if statement.startswith("INSERT INTO app_user"):
            self.pending["app_user"].append(params[0])
            return _Result()
        if statement.startswith("INSERT INTO user_profile"):
            self.pending["user_profile"].append(params[0])
            return _Result()
        if statement.startswith("INSERT INTO user_role"):
            user_id, role = params
            if role not in self.known_roles:
                return _Result()
            self.pending["user_role"].append((user_id, role))
            return _Result({"role_id": 1})
        if statement.startswith("UPDATE auth_session"):
            return _Result()
        raise AssertionError(f"unexpected statement: {statement}")


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _recording_store(conn: RecordingConnection) -> PostgresStore:
    store = _store()
    store.pool = RecordingPool(conn)
    return store


def test_create_user_rolls_back_when_role_is_missing():
    conn = RecordingConnection(known_roles=())
    store = _recording_store(conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(
            "alice", "alice@example.com", "hash", full_name="Alice Example", roles=("USER",)
        )

    assert excinfo.value.field is None
    assert excinfo.value.detail == {"role": "USER"}
    assert conn.rolled_back
    assert any(statement.startswith("INSERT INTO app_user") for statement, _ in conn.statements)
    assert conn.rows == {"app_user": [], "user_profile": [], "user_role": []}


def test_rotate_session_is_conditional_on_the_presented_hash():
    conn = RecordingConnection()
    store = _recording_store(conn)
    user_id = str(uuid.uuid4())
    now = utcnow()
    candidate = Session.new(
        user_id,
        access_token="access",
        access_token_expires_at=now + timedelta(minutes=15),
        refresh_token_hash="new-hash",
        expires_at=now + timedelta(days=7),
    )

    assert store.rotate_session(user_id, "old-hash", candidate) is None

    statement, params = conn.statements[-1]
    assert statement.startswith("UPDATE auth_session")
    assert "INSERT" not in statement
    assert "WHERE user_id = %s AND refresh_token_hash = %s" in statement
    assert params[-2:] == (user_id, "old-hash")
