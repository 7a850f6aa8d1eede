from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from thanawy.config import Settings
from thanawy.logging import get_logger
from thanawy.service.errors import NotFoundError
from thanawy.service.security_log import SecurityEventLogger, SecurityEventType
from thanawy.storage.models import Session, utcnow

if TYPE_CHECKING:
    from thanawy.service.auth import AuthStore

logger = get_logger(__name__)

UNKNOWN = "Unknown"

# Order matters: Edge and Opera carry "Chrome" in their UA, Chrome carries
# "Safari", and iOS user agents mention "Mac OS X".
_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
)
_SYSTEMS = (
    ("Windows NT 10.0", "Windows 10"),
    ("Windows NT 6.3", "Windows 8.1"),
    ("Windows NT 6.2", "Windows 8"),
    ("Windows NT 6.1", "Windows 7"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Android", "Android"),
    ("Mac OS X", "macOS"),
    ("Linux", "Linux"),
)


def parse_user_agent(user_agent: Optional[str]) -> dict[str, str]:
    """Derive ``browser``/``os``/``device_type`` from a User-Agent header."""
    ua = user_agent or ""
    browser = next((name for token, name in _BROWSERS if token in ua), UNKNOWN)
    system = next((name for token, name in _SYSTEMS if token in ua), UNKNOWN)
    if "iPad" in ua or "Tablet" in ua:
        device_type = "tablet"
    elif "Mobile" in ua or system in {"iOS", "Android"}:
        device_type = "mobile"
    elif ua:
        device_type = "desktop"
    else:
        device_type = UNKNOWN
    return {"browser": browser, "os": system, "device_type": device_type}


@dataclass
class SessionView:
    """A session as shown to its owner."""

    id: str
    created_at: datetime
    expires_at: datetime
    last_accessed: datetime
    is_active: bool
    is_current: bool
    ip_addr: Optional[str]
    user_agent: Optional[str]
    device_info: dict

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str]) -> "SessionView":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_accessed=session.last_accessed,
            is_active=session.is_usable(),
            is_current=session.id == current_session_id,
            ip_addr=session.ip_addr,
            user_agent=session.user_agent,
            device_info=dict(session.device_info or {}),
        )


class SessionRegistry:
    """Source of truth for whether a session may still be used."""

    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        security_log: SecurityEventLogger,
    ) -> None:
        self.store = store
        self.settings = settings
        self.security_log = security_log

    def create(
        self,
        user_id: str,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        *,
        remember_me: bool = False,
        method: str = "password",
    ) -> Session:
        # Always a new row: one device may hold several concurrent sessions
        ttl = (
            self.settings.remember_me_refresh_ttl_minutes
            if remember_me
            else self.settings.refresh_token_ttl_minutes
        )
        device_info = parse_user_agent(user_agent)
        session = self.store.create_session(
            user_id,
            ttl_minutes=ttl,
            user_agent=user_agent,
            ip_addr=ip,
            device_info=device_info,
            remember_me=remember_me,
            meta={"login_method": method},
        )
        self.security_log.log(
            user_id,
            SecurityEventType.SESSION_CREATED,
            ip=ip,
            user_agent=user_agent,
            device_info=device_info,
            metadata={"session_id": session.id, "method": method},
        )
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self.store.get_session(session_id)

    @staticmethod
    def is_valid(session: Optional[Session], now: Optional[datetime] = None) -> bool:
        return bool(session) and session.is_usable(now)

    def list(self, user_id: str, current_session_id: Optional[str] = None) -> List[SessionView]:
        return [
            SessionView.from_session(session, current_session_id)
            for session in self.store.list_sessions(user_id)
        ]

    def statistics(self, user_id: str) -> dict[str, int]:
        now = utcnow()
        sessions = self.store.list_sessions(user_id)
        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.is_usable(now)),
        }

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id)

    def revoke(self, session_id: str, *, reason: str = "user") -> bool:
        """Deactivate one session; revoking twice is a no-op."""
        session = self.store.get_session(session_id)
        if not session:
            return False
        changed = self.store.deactivate_session(session_id)
        if changed:
            self.security_log.log(
                session.user_id,
                SecurityEventType.SESSION_REVOKED,
                metadata={"session_id": session_id, "reason": reason},
            )
        return changed

    def revoke_for_user(self, user_id: str, session_id: str) -> bool:
        """Revoke a session the caller owns; someone else's looks like a missing one."""
        session = self.store.get_session(session_id)
        if not session or session.user_id != user_id:
            raise NotFoundError("session not found")
        return self.revoke(session_id)

    def revoke_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        count = self.store.deactivate_user_sessions(
            user_id, except_session_id=except_session_id
        )
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            count=count,
            kept_current=bool(except_session_id),
        )
        return count

    def sweep_expired(self) -> int:
        count = self.store.expire_sessions(utcnow())
        if count:
            logger.info("expired_sessions_swept", count=count)
        return count
