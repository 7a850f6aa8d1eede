from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from thanawy.config import Settings
from thanawy.logging import get_logger
from thanawy.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ValidationError,
)
from thanawy.service.security_log import SecurityEventLogger, SecurityEventType
from thanawy.service.sessions import SessionRegistry
from thanawy.service.tokens import TokenClaims, TokenPair, TokenService
from thanawy.service.two_factor import TwoFactorService
from thanawy.storage.errors import ConstraintViolation
from thanawy.storage.models import (
    OAUTH_PASSWORD_ALGO,
    PASSWORD_ALGO,
    LoginChallenge,
    RecoveryCode,
    SecurityLogEntry,
    Session,
    User,
    UserMFAConfig,
    utcnow,
)
from thanawy.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def link_user_auth_provider(self, user_id: str, provider: str, provider_uid: str) -> None: ...

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig: ...

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def delete_user_mfa_secret(self, user_id: str) -> None: ...

    def replace_recovery_codes(
        self, user_id: str, code_hashes: Sequence[str]
    ) -> List[RecoveryCode]: ...

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]: ...

    def delete_recovery_code(self, user_id: str, code_id: str) -> bool: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        device_info: Optional[dict] = None,
        remember_me: bool = False,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def expire_sessions(self, now: Optional[datetime] = None) -> int: ...

    def save_login_challenge(self, challenge: LoginChallenge) -> LoginChallenge: ...

    def get_login_challenge(self, challenge_id: str) -> Optional[LoginChallenge]: ...

    def delete_login_challenge(self, challenge_id: str) -> bool: ...

    def append_security_log(self, entry: SecurityLogEntry) -> SecurityLogEntry: ...

    def list_security_logs(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SecurityLogEntry], int]: ...

    def verify_connection(self) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: str
    role: str = "user"


@dataclass
class LoginResult:
    """Either a finished sign-in (session + tokens) or a pending second factor."""

    user: User
    session: Optional[Session] = None
    tokens: Optional[TokenPair] = None
    challenge: Optional[LoginChallenge] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge is not None


def password_policy_errors(password: str) -> list[str]:
    problems: list[str] = []
    if not isinstance(password, str):
        return ["password is required"]
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        problems.append(f"must be at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        problems.append("must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("must contain an uppercase letter")
    if not re.search(r"\d", password):
        problems.append("must contain a digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        problems.append("must contain a symbol")
    return problems


class AuthService:
    """Password, two-factor and session orchestration over one store."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.security_log = SecurityEventLogger(store)
        self.tokens = TokenService(store, settings, cache)
        self.sessions = SessionRegistry(store, settings, self.security_log)
        self.two_factor = TwoFactorService(store, settings, self.security_log, cache)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Run against unknown e-mails so both failure paths cost one hash check
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            # OAuth-created accounts carry a sentinel algo and no usable hash
            self.logger.info("password_login_not_available", user_id=user_id, algo=algo)
            return False
        return self._check_hash(stored_hash, password)

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    @staticmethod
    def validate_password(password: str, *, field: str = "password") -> None:
        problems = password_policy_errors(password)
        if problems:
            raise ValidationError(
                "password does not meet requirements",
                detail={"field": field, "problems": problems},
            )

    # registration and sign-in
    def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        self.validate_password(password)
        try:
            user = self.store.create_user(email, (name or "").strip() or None)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return self._complete_sign_in(
            user, remember_me=False, user_agent=user_agent, ip=ip, method="register"
        )

    def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email or "")
        if not user:
            self._check_hash(self._dummy_hash, password or "")
            self.logger.warning("login_failed", reason="unknown_email")
            raise AuthenticationError("invalid credentials")
        if not self.verify_password(user.id, password or ""):
            self.security_log.log(
                user.id,
                SecurityEventType.LOGIN_FAILED,
                ip=ip,
                user_agent=user_agent,
                metadata={"reason": "bad_password"},
            )
            raise AuthenticationError("invalid credentials")

        return self.begin_sign_in(
            user, remember_me=remember_me, user_agent=user_agent, ip=ip, method="password"
        )

    def begin_sign_in(
        self,
        user: User,
        *,
        remember_me: bool = False,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        method: str = "password",
        metadata: Optional[dict] = None,
    ) -> LoginResult:
        """Finish a verified first factor.

        Accounts with two-factor enabled get a pending login challenge and no
        session; everyone else is signed in straight away.
        """
        if not self.two_factor.is_enabled(user.id):
            return self._complete_sign_in(
                user,
                remember_me=remember_me,
                user_agent=user_agent,
                ip=ip,
                method=method,
                metadata=metadata,
            )
        challenge = LoginChallenge(
            id=str(uuid.uuid4()),
            user_id=user.id,
            expires_at=utcnow() + timedelta(minutes=self.settings.login_challenge_ttl_minutes),
            remember_me=remember_me,
            user_agent=user_agent,
            ip_addr=ip,
        )
        self.store.save_login_challenge(challenge)
        self.security_log.log(
            user.id,
            SecurityEventType.TWO_FACTOR_REQUESTED,
            ip=ip,
            user_agent=user_agent,
            metadata={**(metadata or {}), "login_attempt_id": challenge.id, "method": method},
        )
        return LoginResult(user=user, challenge=challenge)

    async def complete_two_factor_login(
        self,
        login_attempt_id: str,
        code: str,
        *,
        use_recovery_code: bool = False,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        challenge = self.store.get_login_challenge(login_attempt_id) if login_attempt_id else None
        if not challenge or (user_id and user_id != challenge.user_id):
            raise AuthenticationError("login attempt expired or invalid")
        if challenge.expires_at <= utcnow():
            self.store.delete_login_challenge(challenge.id)
            raise AuthenticationError("login attempt expired or invalid")
        user = self.store.get_user(challenge.user_id)
        if not user:
            raise AuthenticationError("login attempt expired or invalid")

        user_agent = user_agent or challenge.user_agent
        ip = ip or challenge.ip_addr
        valid = await self.two_factor.verify_login(
            user.id, code, use_recovery_code, ip=ip, user_agent=user_agent
        )
        if not valid:
            raise AuthenticationError("invalid code")
        # One challenge yields one session even under concurrent submits
        if not self.store.delete_login_challenge(challenge.id):
            raise AuthenticationError("login attempt expired or invalid")
        method = "recovery_code" if use_recovery_code else "totp"
        return self._complete_sign_in(
            user,
            remember_me=challenge.remember_me,
            user_agent=user_agent,
            ip=ip,
            method=method,
        )

    def _complete_sign_in(
        self,
        user: User,
        *,
        remember_me: bool,
        user_agent: Optional[str],
        ip: Optional[str],
        method: str,
        metadata: Optional[dict] = None,
    ) -> LoginResult:
        session = self.sessions.create(
            user.id, user_agent, ip, remember_me=remember_me, method=method
        )
        tokens = self.tokens.issue(user, session)
        user = self.store.update_user(user.id, last_login=utcnow()) or user
        self.security_log.log(
            user.id,
            SecurityEventType.LOGIN_SUCCESS,
            ip=ip,
            user_agent=user_agent,
            metadata={**(metadata or {}), "method": method, "session_id": session.id},
        )
        return LoginResult(user=user, session=session, tokens=tokens)

    # tokens
    async def refresh(
        self, refresh_token: Optional[str]
    ) -> Optional[Tuple[TokenClaims, TokenPair]]:
        return await self.tokens.refresh(refresh_token)

    def authenticate(self, token: Optional[str]) -> Optional[AuthContext]:
        claims = self.tokens.verify(token)
        if not claims:
            return None
        user = self.store.get_user(claims.user_id)
        if not user:
            return None
        return AuthContext(
            user_id=user.id,
            email=user.email,
            session_id=claims.session_id,
            role=user.role,
        )

    def logout(
        self,
        token: Optional[str],
        *,
        all_devices: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Revoke the token's session (or every session); never raises for bad tokens."""
        payload = self.tokens.decode(token)
        if not payload:
            return 0
        user_id = payload["sub"]
        session_id = payload["sid"]
        session = self.store.get_session(session_id)
        if not session or session.user_id != user_id:
            return 0
        if all_devices:
            revoked = self.sessions.revoke_all(user_id)
            event = SecurityEventType.LOGOUT_ALL
        else:
            revoked = 1 if self.sessions.revoke(session_id, reason="logout") else 0
            event = SecurityEventType.LOGOUT
        self.security_log.log(
            user_id,
            event,
            ip=ip,
            user_agent=user_agent,
            metadata={"session_id": session_id, "revoked": revoked},
        )
        return revoked

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Swap the password and sign out every other session; returns how many."""
        record = self.store.get_password_record(user_id)
        if record and record[1] == OAUTH_PASSWORD_ALGO:
            raise ForbiddenError("this account signs in through an OAuth provider")
        if not self.verify_password(user_id, current_password or ""):
            self.security_log.log(
                user_id,
                SecurityEventType.LOGIN_FAILED,
                ip=ip,
                user_agent=user_agent,
                metadata={"reason": "bad_current_password", "action": "change_password"},
            )
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "newPassword"},
            )
        self.validate_password(new_password, field="newPassword")
        self.save_password(user_id, new_password)
        revoked = self.sessions.revoke_all(user_id, except_session_id=session_id)
        self.security_log.log(
            user_id,
            SecurityEventType.PASSWORD_CHANGED,
            ip=ip,
            user_agent=user_agent,
            metadata={"other_sessions_revoked": revoked},
        )
        return revoked
