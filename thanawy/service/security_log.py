from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional, Tuple

from thanawy.logging import get_logger
from thanawy.storage.common import parse_ip
from thanawy.storage.models import SecurityLogEntry

if TYPE_CHECKING:
    from thanawy.service.auth import AuthStore

logger = get_logger(__name__)


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_ATTEMPT_BLOCKED = "LOGIN_ATTEMPT_BLOCKED"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    TWO_FACTOR_SETUP = "TWO_FACTOR_SETUP"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TWO_FACTOR_REQUESTED = "TWO_FACTOR_REQUESTED"
    TWO_FACTOR_SUCCESS = "TWO_FACTOR_SUCCESS"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    RECOVERY_CODES_REGENERATED = "RECOVERY_CODES_REGENERATED"
    RECOVERY_CODE_USED = "RECOVERY_CODE_USED"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SUSPICIOUS_ACTIVITY_DETECTED = "SUSPICIOUS_ACTIVITY_DETECTED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


class SecurityEventLogger:
    """Append-only audit trail of account security events.

    There is deliberately no update or delete path. Reads are always scoped
    to one user.
    """

    def __init__(self, store: "AuthStore") -> None:
        self.store = store

    def log(
        self,
        user_id: str,
        event_type: SecurityEventType | str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[dict] = None,
        location: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SecurityLogEntry:
        event = SecurityEventType(event_type)
        entry = SecurityLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            event_type=event.value,
            ip=parse_ip(ip),
            user_agent=user_agent,
            device_info=dict(device_info) if device_info else None,
            location=location,
            metadata=dict(metadata) if metadata else None,
        )
        self.store.append_security_log(entry)
        logger.info(
            "security_event",
            event_type=event.value,
            user_id=user_id,
            ip=entry.ip,
            metadata=entry.metadata,
        )
        return entry

    def list(
        self,
        user_id: str,
        *,
        event_type: Optional[SecurityEventType | str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SecurityLogEntry], int]:
        if event_type is not None:
            event_type = SecurityEventType(event_type).value
        return self.store.list_security_logs(
            user_id,
            event_type=event_type,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
