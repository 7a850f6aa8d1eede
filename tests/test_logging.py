import structlog

from thanawy.logging import _mask_email, _redact, bind_request_id


def test_secrets_are_fully_masked():
    event = _redact(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2",
            "refresh_token": "eyJ...",
            "code": "123456",
            "client_secret": "abc",
        },
    )

    assert event["event"] == "login_failed"
    assert event["password"] == "***"
    assert event["refresh_token"] == "***"
    assert event["code"] == "***"
    assert event["client_secret"] == "***"


def test_error_code_and_non_strings_are_kept():
    event = _redact(None, "warning", {"event": "service_error", "error_code": "conflict", "status_code": 409})

    assert event["error_code"] == "conflict"
    assert event["status_code"] == 409


def test_email_keeps_only_domain():
    event = _redact(None, "info", {"event": "user_registered", "email": "student@example.com"})

    assert event["email"] == "s***@example.com"
    assert _mask_email("not-an-email") == "***"


def test_bind_request_id_accepts_safe_client_value():
    assert bind_request_id("req-123") == "req-123"
    assert structlog.contextvars.get_contextvars()["request_id"] == "req-123"


def test_bind_request_id_replaces_unsafe_value():
    request_id = bind_request_id("x" * 200)

    assert request_id != "x" * 200
    assert len(request_id) == 32
    assert bind_request_id("bad\nvalue") != "bad\nvalue"
    assert bind_request_id(None)


def test_bind_request_id_starts_fresh_context():
    structlog.contextvars.bind_contextvars(user_id="u1")

    bind_request_id("req-1")

    assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
