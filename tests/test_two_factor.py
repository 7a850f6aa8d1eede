"""Tests for TOTP, recovery codes and the second-factor lockout."""

import time
from urllib.parse import parse_qs, urlparse

import pytest

from thanawy.service.errors import ConflictError, RateLimitedError, ValidationError
from thanawy.service.security_log import SecurityEventLogger, SecurityEventType
from thanawy.service.two_factor import (
    RECOVERY_ALPHABET,
    TwoFactorService,
    build_otpauth_uri,
    format_manual_key,
    generate_recovery_code,
    generate_totp,
    generate_totp_secret,
    normalize_recovery_code,
    verify_totp,
)

# RFC 6238 appendix B, SHA1 seed "12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def service(memory_store, settings):
    return TwoFactorService(memory_store, settings, SecurityEventLogger(memory_store))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("mfa@example.com")


def _events(store, user_id):
    logs, _ = store.list_security_logs(user_id, limit=100)
    return [entry.event_type for entry in logs]


def _wrong_code(secret):
    return next(c for c in ("000000", "111111", "222222") if not verify_totp(secret, c))


def _enable(service, memory_store, user):
    setup = service.setup(user)
    service.verify_and_enable(user.id, generate_totp(setup.secret))
    return setup


class TestTotpPrimitives:
    @pytest.mark.parametrize(
        "timestamp, expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
    )
    def test_rfc6238_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_window_accepts_adjacent_steps_only(self):
        now = 1_700_000_000
        previous = generate_totp(RFC_SECRET, now - 30)
        stale = generate_totp(RFC_SECRET, now - 90)

        assert verify_totp(RFC_SECRET, previous, timestamp=now)
        assert not verify_totp(RFC_SECRET, stale, timestamp=now)

    def test_rejects_malformed_codes(self):
        for code in ("", "12345", "1234567", "abcdef", None):
            assert not verify_totp(RFC_SECRET, code)

    def test_secret_is_base32_of_twenty_bytes(self):
        secret = generate_totp_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_otpauth_uri(self):
        uri = build_otpauth_uri("SECRET", "user@example.com", "Thanawy")
        parsed = urlparse(uri)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert params["secret"] == ["SECRET"]
        assert params["issuer"] == ["Thanawy"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]

    def test_manual_key_grouped_by_four(self):
        assert format_manual_key("ABCDEFGHIJ") == "ABCD EFGH IJ"


class TestRecoveryCodeFormat:
    def test_code_shape(self):
        code = generate_recovery_code()
        left, right = code.split("-")
        assert len(left) == len(right) == 4
        assert set(left + right) <= set(RECOVERY_ALPHABET)

    def test_normalization(self):
        assert normalize_recovery_code(" abcd-efgh ") == "ABCDEFGH"


class TestEnrollment:
    """Tests for setup, verify-and-enable and disable."""

    def test_setup_leaves_two_factor_disabled(self, service, user, memory_store, settings):
        setup = service.setup(user)

        assert len(setup.recovery_codes) == settings.recovery_code_count
        assert setup.qr_code_url.startswith("otpauth://totp/")
        assert not service.is_enabled(user.id)
        assert memory_store.get_user_mfa_secret(user.id).secret == setup.secret
        assert SecurityEventType.TWO_FACTOR_SETUP.value in _events(memory_store, user.id)

    def test_secret_encrypted_at_rest(self, service, user, memory_store):
        setup = service.setup(user)

        assert memory_store.mfa_secrets[user.id].secret != setup.secret

    def test_enable_requires_valid_code(self, service, user, memory_store):
        setup = service.setup(user)
        wrong = _wrong_code(setup.secret)

        with pytest.raises(ValidationError):
            service.verify_and_enable(user.id, wrong)
        assert not service.is_enabled(user.id)

        assert service.verify_and_enable(user.id, generate_totp(setup.secret))
        assert service.is_enabled(user.id)
        assert memory_store.get_user(user.id).two_factor_enabled
        assert SecurityEventType.TWO_FACTOR_ENABLED.value in _events(memory_store, user.id)

    def test_enable_without_setup(self, service, user):
        with pytest.raises(ValidationError) as excinfo:
            service.verify_and_enable(user.id, "123456")
        assert excinfo.value.error_code == "bad_request"

    def test_non_numeric_code_rejected(self, service, user):
        service.setup(user)
        with pytest.raises(ValidationError):
            service.verify_and_enable(user.id, "12ab56")

    def test_setup_twice_when_enabled_conflicts(self, service, user, memory_store):
        _enable(service, memory_store, user)

        with pytest.raises(ConflictError) as excinfo:
            service.setup(memory_store.get_user(user.id))
        assert excinfo.value.detail["current"] == {"twoFactorEnabled": True}

    def test_enable_twice_reports_current_state(self, service, user, memory_store):
        setup = _enable(service, memory_store, user)

        with pytest.raises(ConflictError) as excinfo:
            service.verify_and_enable(user.id, generate_totp(setup.secret))
        assert excinfo.value.current == {"twoFactorEnabled": True}

    async def test_disable_with_totp(self, service, user, memory_store):
        setup = _enable(service, memory_store, user)

        await service.disable(user.id, generate_totp(setup.secret, time.time() + 30))

        assert not service.is_enabled(user.id)
        assert memory_store.get_user_mfa_secret(user.id) is None
        assert service.count_recovery_codes(user.id) == 0
        assert not memory_store.get_user(user.id).two_factor_enabled

    async def test_disable_rejects_wrong_code(self, service, user, memory_store):
        _enable(service, memory_store, user)

        with pytest.raises(ValidationError):
            await service.disable(user.id, "ZZZZ-ZZZZ")
        assert service.is_enabled(user.id)


class TestLoginVerification:
    """Tests for verify_login, recovery codes and lockout."""

    async def test_totp_success_logged(self, service, user, memory_store):
        setup = _enable(service, memory_store, user)

        assert await service.verify_login(user.id, generate_totp(setup.secret))
        assert SecurityEventType.TWO_FACTOR_SUCCESS.value in _events(memory_store, user.id)

    async def test_not_enabled_fails(self, service, user):
        assert await service.verify_login(user.id, "123456") is False

    async def test_recovery_code_single_use(self, service, user, memory_store):
        setup = _enable(service, memory_store, user)
        code = setup.recovery_codes[0]

        assert await service.verify_login(user.id, code.lower(), use_recovery_code=True)
        assert service.count_recovery_codes(user.id) == len(setup.recovery_codes) - 1
        assert not await service.verify_login(user.id, code, use_recovery_code=True)
        assert SecurityEventType.RECOVERY_CODE_USED.value in _events(memory_store, user.id)

    async def test_lockout_after_max_attempts(self, service, user, memory_store, settings):
        setup = _enable(service, memory_store, user)

        for _ in range(settings.mfa_max_attempts):
            assert not await service.verify_login(user.id, "ABCD-EFGH", use_recovery_code=True)

        with pytest.raises(RateLimitedError) as excinfo:
            await service.verify_login(user.id, generate_totp(setup.secret))
        assert excinfo.value.detail["retry_after"] == settings.mfa_lockout_seconds

        events = _events(memory_store, user.id)
        assert SecurityEventType.ACCOUNT_LOCKED.value in events
        assert SecurityEventType.LOGIN_ATTEMPT_BLOCKED.value in events

    async def test_success_resets_failure_count(self, service, user, memory_store, settings):
        setup = _enable(service, memory_store, user)

        for _ in range(settings.mfa_max_attempts - 1):
            await service.verify_login(user.id, "ABCD-EFGH", use_recovery_code=True)
        assert await service.verify_login(user.id, generate_totp(setup.secret))
        assert not await service.verify_login(user.id, "ABCD-EFGH", use_recovery_code=True)
        assert await service.verify_login(user.id, generate_totp(setup.secret))


class TestRegenerateRecoveryCodes:
    def test_regenerate_replaces_old_set(self, service, user, memory_store):
        setup = _enable(service, memory_store, user)

        fresh = service.generate_recovery_codes(user.id, 5)

        assert len(fresh) == 5
        assert service.count_recovery_codes(user.id) == 5
        assert not service.consume_recovery_code(user.id, setup.recovery_codes[0])
        assert SecurityEventType.RECOVERY_CODES_REGENERATED.value in _events(
            memory_store, user.id
        )

    @pytest.mark.parametrize("count", [0, 21])
    def test_count_bounds(self, service, user, count):
        with pytest.raises(ValidationError):
            service.generate_recovery_codes(user.id, count)
