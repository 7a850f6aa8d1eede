from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from thanawy.logging import get_logger
from thanawy.storage.common import (
    SecretCipher,
    filter_security_logs,
    normalize_email,
    parse_ip,
)
from thanawy.storage.errors import ConstraintViolation
from thanawy.storage.models import (
    LoginChallenge,
    RecoveryCode,
    SecurityLogEntry,
    Session,
    User,
    UserAuthProvider,
    UserMFAConfig,
    utcnow,
)


class MemoryStore:
    """In-process credential and session store persisted to a JSON file."""

    def __init__(
        self, fs_root: str = "/tmp/thanawy", *, mfa_encryption_key: str
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.providers: List[UserAuthProvider] = []
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        self.recovery_codes: Dict[str, List[RecoveryCode]] = {}
        self.security_logs: List[SecurityLogEntry] = []
        self.login_challenges: Dict[str, LoginChallenge] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(mfa_encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        email_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                email_verified=email_verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        allowed = {"name", "role", "email_verified", "two_factor_enabled", "last_login", "meta"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            # Same semantics as ON CONFLICT DO NOTHING
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    return
            max_id = max((p.id for p in self.providers), default=0)
            self.providers.append(
                UserAuthProvider(
                    id=max_id + 1,
                    user_id=user_id,
                    provider=provider,
                    provider_uid=provider_uid,
                )
            )
            self._persist_state()

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return self.users.get(mapping.user_id)
            return None

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # two-factor
    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = UserMFAConfig(
                user_id=user_id, secret=self._cipher.encrypt(secret), enabled=enabled
            )
            self.mfa_secrets[user_id] = record
            self._persist_state()
            return UserMFAConfig(
                user_id=user_id,
                secret=secret,
                enabled=enabled,
                created_at=record.created_at,
            )

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return None
            return UserMFAConfig(
                user_id=cfg.user_id,
                secret=self._cipher.decrypt(cfg.secret),
                enabled=cfg.enabled,
                created_at=cfg.created_at,
                meta=cfg.meta,
            )

    def delete_user_mfa_secret(self, user_id: str) -> None:
        with self._data_lock:
            if self.mfa_secrets.pop(user_id, None) is not None:
                self._persist_state()

    def replace_recovery_codes(
        self, user_id: str, code_hashes: Sequence[str]
    ) -> List[RecoveryCode]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for recovery codes", {"user_id": user_id}
                )
            codes = [
                RecoveryCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=h)
                for h in code_hashes
            ]
            self.recovery_codes[user_id] = codes
            self._persist_state()
            return list(codes)

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return list(self.recovery_codes.get(user_id, []))

    def delete_recovery_code(self, user_id: str, code_id: str) -> bool:
        """Remove one code; False when another request already consumed it."""
        with self._data_lock:
            codes = self.recovery_codes.get(user_id, [])
            remaining = [c for c in codes if c.id != code_id]
            if len(remaining) == len(codes):
                return False
            self.recovery_codes[user_id] = remaining
            self._persist_state()
            return True

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        device_info: Optional[Dict] = None,
        remember_me: bool = False,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=parse_ip(ip_addr),
                device_info=device_info,
                remember_me=remember_me,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = meta
            self._persist_state()

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_accessed = at or utcnow()
            self._persist_state()

    def deactivate_session(self, session_id: str) -> bool:
        """Mark one session inactive; True only if it was active before."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def expire_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    expired += 1
            stale = [cid for cid, ch in self.login_challenges.items() if ch.expires_at <= now]
            for cid in stale:
                self.login_challenges.pop(cid, None)
            if expired or stale:
                self._persist_state()
            return expired

    # pending two-factor logins
    def save_login_challenge(self, challenge: LoginChallenge) -> LoginChallenge:
        with self._data_lock:
            if challenge.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": challenge.user_id}
                )
            self.login_challenges[challenge.id] = challenge
            self._persist_state()
            return challenge

    def get_login_challenge(self, challenge_id: str) -> Optional[LoginChallenge]:
        with self._data_lock:
            return self.login_challenges.get(challenge_id)

    def delete_login_challenge(self, challenge_id: str) -> bool:
        with self._data_lock:
            removed = self.login_challenges.pop(challenge_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    # security log
    def append_security_log(self, entry: SecurityLogEntry) -> SecurityLogEntry:
        with self._data_lock:
            self.security_logs.append(entry)
            self._persist_state()
            return entry

    def list_security_logs(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SecurityLogEntry], int]:
        with self._data_lock:
            snapshot = list(self.security_logs)
        return filter_security_logs(
            snapshot,
            user_id,
            event_type=event_type,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "providers": [self._serialize_provider(p) for p in self.providers],
            "mfa_secrets": [
                self._serialize_mfa_config(cfg) for cfg in self.mfa_secrets.values()
            ],
            "recovery_codes": [
                self._serialize_recovery_code(code)
                for codes in self.recovery_codes.values()
                for code in codes
            ],
            "security_logs": [
                self._serialize_security_log(entry) for entry in self.security_logs
            ],
            "login_challenges": [
                self._serialize_login_challenge(ch)
                for ch in self.login_challenges.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, ensure_ascii=False))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.providers = [
            self._deserialize_provider(p) for p in data.get("providers", [])
        ]
        self.mfa_secrets = {
            cfg["user_id"]: self._deserialize_mfa_config(cfg)
            for cfg in data.get("mfa_secrets", [])
        }
        self.recovery_codes = {}
        for code_data in data.get("recovery_codes", []):
            code = self._deserialize_recovery_code(code_data)
            self.recovery_codes.setdefault(code.user_id, []).append(code)
        self.security_logs = [
            self._deserialize_security_log(e) for e in data.get("security_logs", [])
        ]
        self.login_challenges = {
            ch["id"]: self._deserialize_login_challenge(ch)
            for ch in data.get("login_challenges", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "email_verified": user.email_verified,
            "two_factor_enabled": user.two_factor_enabled,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login": self._serialize_datetime(user.last_login),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", "user"),
            email_verified=bool(data.get("email_verified", False)),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            meta=data.get("meta"),
        )

    def _serialize_provider(self, provider: UserAuthProvider) -> dict:
        return {
            "id": provider.id,
            "user_id": provider.user_id,
            "provider": provider.provider,
            "provider_uid": provider.provider_uid,
            "created_at": self._serialize_datetime(provider.created_at),
        }

    def _deserialize_provider(self, data: dict) -> UserAuthProvider:
        return UserAuthProvider(
            id=int(data["id"]),
            user_id=str(data["user_id"]),
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_accessed": self._serialize_datetime(session.last_accessed),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "device_info": session.device_info,
            "is_active": session.is_active,
            "remember_me": session.remember_me,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data["created_at"])
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=created_at,
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_accessed=self._deserialize_datetime(data.get("last_accessed")) or created_at,
            user_agent=data.get("user_agent"),
            ip_addr=parse_ip(data.get("ip_addr")),
            device_info=data.get("device_info"),
            is_active=bool(data.get("is_active", True)),
            remember_me=bool(data.get("remember_me", False)),
            meta=data.get("meta"),
        )

    def _serialize_mfa_config(self, cfg: UserMFAConfig) -> dict:
        # Secret is already encrypted in memory
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "created_at": self._serialize_datetime(cfg.created_at),
            "meta": cfg.meta,
        }

    def _deserialize_mfa_config(self, data: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=bool(data.get("enabled", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_recovery_code(self, code: RecoveryCode) -> dict:
        return {
            "id": code.id,
            "user_id": code.user_id,
            "code_hash": code.code_hash,
            "created_at": self._serialize_datetime(code.created_at),
        }

    def _deserialize_recovery_code(self, data: dict) -> RecoveryCode:
        return RecoveryCode(
            id=data["id"],
            user_id=data["user_id"],
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_security_log(self, entry: SecurityLogEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "event_type": entry.event_type,
            "created_at": self._serialize_datetime(entry.created_at),
            "ip": entry.ip,
            "user_agent": entry.user_agent,
            "device_info": entry.device_info,
            "location": entry.location,
            "metadata": entry.metadata,
        }

    def _deserialize_security_log(self, data: dict) -> SecurityLogEntry:
        return SecurityLogEntry(
            id=data["id"],
            user_id=data["user_id"],
            event_type=data["event_type"],
            created_at=self._deserialize_datetime(data["created_at"]),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
            device_info=data.get("device_info"),
            location=data.get("location"),
            metadata=data.get("metadata"),
        )

    def _serialize_login_challenge(self, challenge: LoginChallenge) -> dict:
        return {
            "id": challenge.id,
            "user_id": challenge.user_id,
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "remember_me": challenge.remember_me,
            "user_agent": challenge.user_agent,
            "ip_addr": challenge.ip_addr,
            "methods": challenge.methods,
        }

    def _deserialize_login_challenge(self, data: dict) -> LoginChallenge:
        return LoginChallenge(
            id=data["id"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            remember_me=bool(data.get("remember_me", False)),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            methods=list(data.get("methods") or ["totp", "recovery_code"]),
        )
