import ipaddress
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg import errors

from thanawy.storage.common import SecretCipher
from thanawy.storage.errors import ConstraintViolation, StoreUnavailable
from thanawy.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays canned results (or raises queued exceptions) in call order."""

    def __init__(self, responses=()):
        self.responses = list(responses)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeResult()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.dsn = "postgresql://unused"
    store._cipher = SecretCipher("unit-test-key")
    return store


def test_session_row_mapping(tmp_path: Path):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "created_at": now,
        "expires_at": now + timedelta(days=1),
        "last_accessed": None,
        "user_agent": "pytest",
        "ip_addr": ipaddress.ip_address("203.0.113.5"),
        "device_info": '{"browser": "Chrome"}',
        "is_active": True,
        "remember_me": False,
        "meta": {"login_method": "password"},
    }

    session = PostgresStore._row_to_session(row)

    assert session.id == str(row["id"])
    assert session.ip_addr == "203.0.113.5"
    assert session.device_info == {"browser": "Chrome"}
    assert session.meta == {"login_method": "password"}
    assert session.last_accessed == now
    assert session.is_usable()


def test_update_user_rejects_unknown_fields_without_query(tmp_path: Path):
    store = _store(tmp_path, DummyPool())

    with pytest.raises(ValueError):
        store.update_user("u1", email="hijack@example.com")


def test_update_user_builds_returning_update(tmp_path: Path):
    user_id = str(uuid.uuid4())
    conn = FakeConnection(
        [FakeResult([{"id": user_id, "email": "a@example.com", "two_factor_enabled": True}])]
    )
    store = _store(tmp_path, FakePool(conn))

    user = store.update_user(user_id, two_factor_enabled=True)

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE app_user SET two_factor_enabled = %s, updated_at = now()")
    assert sql.endswith("RETURNING *")
    assert params == (True, user_id)
    assert user.two_factor_enabled


def test_create_user_duplicate_email(tmp_path: Path):
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])
    store = _store(tmp_path, FakePool(conn))

    with pytest.raises(ConstraintViolation):
        store.create_user("Dup@Example.com")
    assert conn.executed[0][1][1] == "dup@example.com"


def test_create_session_for_missing_user(tmp_path: Path):
    conn = FakeConnection([errors.ForeignKeyViolation("fk")])
    store = _store(tmp_path, FakePool(conn))

    with pytest.raises(ConstraintViolation):
        store.create_session(str(uuid.uuid4()))


def test_non_uuid_session_id_is_missing(tmp_path: Path):
    conn = FakeConnection([errors.InvalidTextRepresentation("bad uuid")])
    store = _store(tmp_path, FakePool(conn))

    assert store.get_session("not-a-uuid") is None


def test_deactivate_session_reports_change(tmp_path: Path):
    conn = FakeConnection([FakeResult([{"id": "s1"}]), FakeResult([])])
    store = _store(tmp_path, FakePool(conn))

    assert store.deactivate_session("s1") is True
    assert store.deactivate_session("s1") is False
    assert "AND is_active" in conn.executed[0][0]


def test_deactivate_user_sessions_keeps_current(tmp_path: Path):
    conn = FakeConnection([FakeResult(rowcount=3)])
    store = _store(tmp_path, FakePool(conn))

    assert store.deactivate_user_sessions("u1", except_session_id="s-keep") == 3
    sql, params = conn.executed[0]
    assert "id <> %s" in sql
    assert params == ("u1", "s-keep")


def test_missing_schema_fails_fast(tmp_path: Path):
    conn = FakeConnection([FakeResult([{"oid": "app_user"}])] + [FakeResult([{"oid": None}])] * 7)
    store = _store(tmp_path, FakePool(conn))

    with pytest.raises(StoreUnavailable) as excinfo:
        store._verify_required_schema()
    assert "auth_session" in excinfo.value.detail["missing"]
    assert "app_user" not in excinfo.value.detail["missing"]
