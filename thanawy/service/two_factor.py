"""TOTP second factor and single-use recovery codes.

A user moves ``disabled -> pending-setup -> enabled``. Setup stores a fresh
secret with ``enabled=False``; nothing trusts it until ``verify_and_enable``
sees one valid code. Recovery codes are stored only as argon2id hashes and
shown in plaintext exactly once.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional, Union
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from thanawy.config import Settings
from thanawy.logging import get_logger
from thanawy.service.errors import (
    BadRequestError,
    ConflictError,
    RateLimitedError,
    ValidationError,
)
from thanawy.service.security_log import SecurityEventLogger, SecurityEventType
from thanawy.storage.models import User, utcnow
from thanawy.storage.redis_cache import RedisCache, SyncRedisCache

if TYPE_CHECKING:
    from thanawy.service.auth import AuthStore

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_WINDOW = 1
SECRET_BYTES = 20

# No 0/O, 1/I/L: codes get typed from paper
RECOVERY_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
RECOVERY_GROUP = 4


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str,
    timestamp: Optional[float] = None,
    *,
    interval: int = TOTP_PERIOD,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    ts = time.time() if timestamp is None else timestamp
    counter = struct.pack(">Q", int(ts // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    timestamp: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_PERIOD,
) -> bool:
    if not secret or not is_totp_code(code):
        return False
    now = time.time() if timestamp is None else timestamp
    for step in range(-window, window + 1):
        generated = generate_totp(secret, now + step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def is_totp_code(code: Optional[str]) -> bool:
    return bool(code) and len(code) == TOTP_DIGITS and code.isdigit()


def build_otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


def format_manual_key(secret: str) -> str:
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def generate_recovery_code() -> str:
    chars = "".join(secrets.choice(RECOVERY_ALPHABET) for _ in range(RECOVERY_GROUP * 2))
    return f"{chars[:RECOVERY_GROUP]}-{chars[RECOVERY_GROUP:]}"


def normalize_recovery_code(code: str) -> str:
    return "".join((code or "").split()).replace("-", "").upper()


@dataclass
class TOTPSetup:
    secret: str
    qr_code_url: str
    manual_entry_key: str
    recovery_codes: List[str]


class TwoFactorService:
    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        security_log: SecurityEventLogger,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.security_log = security_log
        self.cache = cache
        self._hasher = PasswordHasher(type=Type.ID)
        # Lockout bookkeeping when Redis is not configured
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}

    # setup / enable / disable
    def setup(self, user: User) -> TOTPSetup:
        existing = self.store.get_user_mfa_secret(user.id)
        if user.two_factor_enabled or (existing and existing.enabled):
            raise ConflictError(
                "two-factor authentication is already enabled",
                current={"twoFactorEnabled": True},
            )
        secret = generate_totp_secret()
        self.store.set_user_mfa_secret(user.id, secret, enabled=False)
        codes = self.generate_recovery_codes(user.id, log_event=False)
        self.security_log.log(user.id, SecurityEventType.TWO_FACTOR_SETUP)
        return TOTPSetup(
            secret=secret,
            qr_code_url=build_otpauth_uri(secret, user.email, self.settings.totp_issuer),
            manual_entry_key=format_manual_key(secret),
            recovery_codes=codes,
        )

    def verify_and_enable(self, user_id: str, code: str) -> bool:
        if not is_totp_code(code):
            raise ValidationError("code must be 6 digits", detail={"field": "code"})
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg:
            raise BadRequestError("two-factor setup has not been started")
        if cfg.enabled:
            raise ConflictError(
                "two-factor authentication is already enabled",
                current={"twoFactorEnabled": True},
            )
        if not verify_totp(cfg.secret, code):
            self.security_log.log(
                user_id,
                SecurityEventType.TWO_FACTOR_FAILED,
                metadata={"stage": "enable"},
            )
            raise ValidationError("incorrect code")
        self.store.set_user_mfa_secret(user_id, cfg.secret, enabled=True)
        self.store.update_user(user_id, two_factor_enabled=True)
        self.security_log.log(user_id, SecurityEventType.TWO_FACTOR_ENABLED)
        return True

    async def disable(self, user_id: str, code: str) -> None:
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg or not cfg.enabled:
            raise BadRequestError("two-factor authentication is not enabled")
        use_recovery = not is_totp_code(code)
        if not await self.verify_login(user_id, code, use_recovery, stage="disable"):
            raise ValidationError("incorrect code")
        self.store.delete_user_mfa_secret(user_id)
        self.store.replace_recovery_codes(user_id, [])
        self.store.update_user(user_id, two_factor_enabled=False)
        self.security_log.log(user_id, SecurityEventType.TWO_FACTOR_DISABLED)

    def is_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_user_mfa_secret(user_id)
        return bool(cfg and cfg.enabled)

    # sign-in verification
    async def verify_login(
        self,
        user_id: str,
        code: str,
        use_recovery_code: bool = False,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        stage: str = "login",
    ) -> bool:
        """Check a second factor; repeated failures lock the user out for a while.

        Raises ``RateLimitedError`` while locked out.
        """
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg or not cfg.enabled:
            return False
        if await self._is_locked_out(user_id):
            self.security_log.log(
                user_id,
                SecurityEventType.LOGIN_ATTEMPT_BLOCKED,
                ip=ip,
                user_agent=user_agent,
                metadata={"stage": stage, "reason": "two_factor_lockout"},
            )
            raise RateLimitedError(
                "too many failed attempts; try again later",
                detail={"retry_after": self.settings.mfa_lockout_seconds},
            )

        method = "recovery_code" if use_recovery_code else "totp"
        if use_recovery_code:
            valid = self.consume_recovery_code(user_id, code)
        else:
            valid = verify_totp(cfg.secret, code)

        if not valid:
            locked = await self._record_failure(user_id)
            self.security_log.log(
                user_id,
                SecurityEventType.TWO_FACTOR_FAILED,
                ip=ip,
                user_agent=user_agent,
                metadata={"stage": stage, "method": method},
            )
            if locked:
                self.security_log.log(
                    user_id,
                    SecurityEventType.ACCOUNT_LOCKED,
                    ip=ip,
                    user_agent=user_agent,
                    metadata={"lockout_seconds": self.settings.mfa_lockout_seconds},
                )
            return False

        await self._clear_failures(user_id)
        self.security_log.log(
            user_id,
            SecurityEventType.TWO_FACTOR_SUCCESS,
            ip=ip,
            user_agent=user_agent,
            metadata={"stage": stage, "method": method},
        )
        return True

    async def _is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = utcnow()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str) -> bool:
        max_attempts = self.settings.mfa_max_attempts
        lockout_seconds = self.settings.mfa_lockout_seconds
        if self.cache:
            locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=max_attempts, lockout_seconds=lockout_seconds
            )
            if locked:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return locked
        now = utcnow()
        window = timedelta(seconds=lockout_seconds)
        with self._state_lock:
            attempts, window_start = self._attempts.get(user_id, (0, now))
            if now - window_start >= window:
                attempts, window_start = 0, now
            attempts += 1
            if attempts >= max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
                return True
            self._attempts[user_id] = (attempts, window_start)
        return False

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)

    # recovery codes
    def generate_recovery_codes(
        self, user_id: str, count: Optional[int] = None, *, log_event: bool = True
    ) -> List[str]:
        """Replace the user's whole recovery-code set and return the plaintext once."""
        if count is None:
            count = self.settings.recovery_code_count
        if count < 1 or count > 20:
            raise ValidationError("count must be between 1 and 20", detail={"field": "count"})
        codes = [generate_recovery_code() for _ in range(count)]
        hashes = [self._hasher.hash(normalize_recovery_code(code)) for code in codes]
        self.store.replace_recovery_codes(user_id, hashes)
        if log_event:
            self.security_log.log(
                user_id,
                SecurityEventType.RECOVERY_CODES_REGENERATED,
                metadata={"count": count},
            )
        return codes

    def count_recovery_codes(self, user_id: str) -> int:
        return len(self.store.list_recovery_codes(user_id))

    def consume_recovery_code(self, user_id: str, code: str) -> bool:
        normalized = normalize_recovery_code(code)
        if len(normalized) != RECOVERY_GROUP * 2:
            return False
        for record in self.store.list_recovery_codes(user_id):
            try:
                self._hasher.verify(record.code_hash, normalized)
            except (VerifyMismatchError, VerificationError, InvalidHash):
                continue
            # Only the caller whose delete lands gets to use the code
            if not self.store.delete_recovery_code(user_id, record.id):
                return False
            self.security_log.log(
                user_id,
                SecurityEventType.RECOVERY_CODE_USED,
                metadata={"remaining": self.count_recovery_codes(user_id)},
            )
            return True
        return False
