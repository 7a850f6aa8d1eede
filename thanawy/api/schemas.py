from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from thanawy.service.sessions import SessionView
from thanawy.storage.models import SecurityLogEntry, User


class CamelModel(BaseModel):
    """Wire models use camelCase; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# requests
class RegisterRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip() or None


class LoginRequest(CamelModel):
    # Not validated beyond length: a malformed address is just a failed login
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Same folding as registration, so both spellings reach one account
        return _normalize_unicode(value).strip().lower()


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(CamelModel):
    logout_all_devices: bool = False


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)


class VerifyCodeRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip()


class VerifyLoginRequest(VerifyCodeRequest):
    login_attempt_id: str = Field(..., min_length=1, max_length=64)
    user_id: Optional[str] = Field(default=None, max_length=64)
    use_recovery_code: bool = False


class DisableTwoFactorRequest(VerifyCodeRequest):
    pass


class RecoveryCodesRequest(CamelModel):
    count: Optional[int] = Field(default=None, ge=1, le=20)


# responses
class UserOut(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    email_verified: bool
    two_factor_enabled: bool
    created_at: datetime
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            email_verified=user.email_verified,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class AuthResponse(CamelModel):
    message: str
    token: str
    refresh_token: str
    session_id: str
    user: UserOut


class TwoFactorChallengeResponse(CamelModel):
    requires_two_factor: bool = True
    login_attempt_id: str
    expires_at: datetime
    methods: List[str]


class VerifyLoginResponse(AuthResponse):
    valid: bool = True


class RefreshResponse(CamelModel):
    message: str
    token: str
    refresh_token: str


class SessionOut(CamelModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_accessed: datetime
    is_active: bool
    is_current: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_view(cls, view: SessionView) -> "SessionOut":
        return cls(
            id=view.id,
            created_at=view.created_at,
            expires_at=view.expires_at,
            last_accessed=view.last_accessed,
            is_active=view.is_active,
            is_current=view.is_current,
            ip_address=view.ip_addr,
            user_agent=view.user_agent,
            device_info=view.device_info,
        )


class SessionStatistics(CamelModel):
    total: int
    active: int


class SessionsResponse(CamelModel):
    sessions: List[SessionOut]
    statistics: SessionStatistics


class TOTPSetupResponse(CamelModel):
    secret: str
    qr_code_url: str = Field(..., alias="qrCodeURL")
    manual_entry_key: str
    recovery_codes: List[str]


class RecoveryCodesResponse(CamelModel):
    codes: List[str]
    message: str
    warning: str


class SecurityLogOut(CamelModel):
    id: str
    event_type: str
    created_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[dict[str, Any]] = None
    location: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @classmethod
    def from_entry(cls, entry: SecurityLogEntry) -> "SecurityLogOut":
        return cls(
            id=entry.id,
            event_type=entry.event_type,
            created_at=entry.created_at,
            ip=entry.ip,
            user_agent=entry.user_agent,
            device_info=entry.device_info,
            location=entry.location,
            metadata=entry.metadata,
        )


class SecurityLogsResponse(CamelModel):
    logs: List[SecurityLogOut]
    total: int
