from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Password algo stored for accounts created through an OAuth provider; such
# accounts can never pass password login.
OAUTH_PASSWORD_ALGO = "oauth"
PASSWORD_ALGO = "argon2id"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    email_verified: bool = False
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_accessed: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    device_info: Dict | None = None
    is_active: bool = True
    remember_me: bool = False
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        device_info: Dict | None = None,
        remember_me: bool = False,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_accessed=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
            device_info=device_info,
            is_active=True,
            remember_me=remember_me,
            meta=meta,
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """True while the session is active and not past its expiry."""
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityLogEntry:
    id: str
    user_id: str
    event_type: str
    created_at: datetime = field(default_factory=utcnow)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Dict | None = None
    location: Optional[str] = None
    metadata: Dict | None = None


@dataclass
class LoginChallenge:
    """Password step passed, second factor still owed."""

    id: str
    user_id: str
    expires_at: datetime
    remember_me: bool = False
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    methods: List[str] = field(default_factory=lambda: ["totp", "recovery_code"])
