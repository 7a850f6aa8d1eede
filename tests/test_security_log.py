from datetime import timedelta

import pytest

from thanawy.service.security_log import SecurityEventLogger, SecurityEventType
from thanawy.storage.models import SecurityLogEntry, utcnow


@pytest.fixture
def security_log(memory_store):
    return SecurityEventLogger(memory_store)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("audit@example.com")


def test_log_normalizes_ip_and_copies_metadata(security_log, user):
    metadata = {"reason": "bad_password"}
    entry = security_log.log(
        user.id,
        SecurityEventType.LOGIN_FAILED,
        ip="203.0.113.7, 10.0.0.1",
        user_agent="pytest",
        metadata=metadata,
    )
    metadata["reason"] = "mutated"

    assert entry.ip == "203.0.113.7"
    assert entry.event_type == "LOGIN_FAILED"
    assert entry.metadata == {"reason": "bad_password"}


def test_unparseable_ip_stored_as_none(security_log, user):
    entry = security_log.log(user.id, "LOGOUT", ip="not-an-ip")
    assert entry.ip is None


def test_unknown_event_type_rejected(security_log, user):
    with pytest.raises(ValueError):
        security_log.log(user.id, "PASSWORD_EXFILTRATED")


def test_list_is_scoped_newest_first_and_paged(security_log, memory_store, user):
    other = memory_store.create_user("someone@example.com")
    base = utcnow() - timedelta(hours=1)
    for minute in range(5):
        memory_store.append_security_log(
            SecurityLogEntry(
                id=f"e{minute}",
                user_id=user.id,
                event_type="LOGIN_SUCCESS",
                created_at=base + timedelta(minutes=minute),
            )
        )
    security_log.log(other.id, SecurityEventType.LOGIN_SUCCESS)

    page, total = security_log.list(user.id, limit=2, offset=1)

    assert total == 5
    assert [entry.id for entry in page] == ["e3", "e2"]


def test_list_filters_by_type_and_window(security_log, memory_store, user):
    now = utcnow()
    memory_store.append_security_log(
        SecurityLogEntry(
            id="old", user_id=user.id, event_type="LOGOUT", created_at=now - timedelta(days=2)
        )
    )
    memory_store.append_security_log(
        SecurityLogEntry(id="new", user_id=user.id, event_type="LOGOUT", created_at=now)
    )
    memory_store.append_security_log(
        SecurityLogEntry(id="other", user_id=user.id, event_type="LOGIN_SUCCESS", created_at=now)
    )

    logs, total = security_log.list(
        user.id, event_type=SecurityEventType.LOGOUT, since=now - timedelta(days=1)
    )
    assert total == 1
    assert logs[0].id == "new"

    logs, total = security_log.list(user.id, until=now - timedelta(days=1))
    assert [entry.id for entry in logs] == ["old"]


def test_page_size_is_capped(security_log, user):
    for _ in range(120):
        security_log.log(user.id, SecurityEventType.LOGIN_SUCCESS)

    page, total = security_log.list(user.id, limit=500)

    assert total == 120
    assert len(page) == 100
