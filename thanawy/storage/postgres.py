from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from thanawy.logging import get_logger
from thanawy.storage.common import (
    SecretCipher,
    clamp_page,
    normalize_email,
    parse_ip,
)
from thanawy.storage.errors import ConstraintViolation, StoreUnavailable
from thanawy.storage.models import (
    LoginChallenge,
    RecoveryCode,
    SecurityLogEntry,
    Session,
    User,
    UserMFAConfig,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_USER_FIELDS = {
    "name",
    "role",
    "email_verified",
    "two_factor_enabled",
    "last_login",
    "meta",
}


def _json_value(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False) if value is not None else None


class PostgresStore:
    """Postgres-backed credential, session and audit store.

    Sessions are always read from the database so a revocation is visible to
    the very next token verification.
    """

    def __init__(self, dsn: str, fs_root: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables have not been installed."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "user_auth_provider",
            "auth_session",
            "user_mfa_secret",
            "user_recovery_code",
            "security_log",
            "login_challenge",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply {} first.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                ),
                {"missing": sorted(missing_tables)},
            )

    # row mapping
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", "user"),
            email_verified=bool(row.get("email_verified", False)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
            last_login=row.get("last_login"),
            meta=_json_value(row.get("meta")),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        raw_ip = row.get("ip_addr")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_accessed=row.get("last_accessed") or row["created_at"],
            user_agent=row.get("user_agent"),
            ip_addr=parse_ip(str(raw_ip)) if raw_ip is not None else None,
            device_info=_json_value(row.get("device_info")),
            is_active=bool(row.get("is_active", True)),
            remember_me=bool(row.get("remember_me", False)),
            meta=_json_value(row.get("meta")),
        )

    @staticmethod
    def _row_to_security_log(row: dict) -> SecurityLogEntry:
        return SecurityLogEntry(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            event_type=row["event_type"],
            created_at=row["created_at"],
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            device_info=_json_value(row.get("device_info")),
            location=row.get("location"),
            metadata=_json_value(row.get("metadata")),
        )

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=name,
            role=role,
            email_verified=email_verified,
            meta=meta.copy() if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, email_verified, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.role,
                        user.email_verified,
                        user.created_at,
                        _dump_json(user.meta),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        values = [
            _dump_json(value) if name == "meta" else value
            for name, value in fields.items()
        ]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*values, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, provider_uid) DO NOTHING
                    """,
                    (user_id, provider, provider_uid),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for provider link", {"user_id": user_id})

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id "
                "WHERE p.provider = %s AND p.provider_uid = %s",
                (provider, provider_uid),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # two-factor
    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        record = UserMFAConfig(user_id=user_id, secret=secret, enabled=enabled)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_mfa_secret (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled
                    """,
                    (user_id, self._cipher.encrypt(secret), enabled, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return record

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UserMFAConfig(
            user_id=str(row["user_id"]),
            secret=self._cipher.decrypt(row["secret"]),
            enabled=bool(row.get("enabled", False)),
            created_at=row.get("created_at") or utcnow(),
            meta=_json_value(row.get("meta")),
        )

    def delete_user_mfa_secret(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_mfa_secret WHERE user_id = %s", (user_id,))

    def replace_recovery_codes(
        self, user_id: str, code_hashes: Sequence[str]
    ) -> List[RecoveryCode]:
        codes = [
            RecoveryCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=h)
            for h in code_hashes
        ]
        try:
            # One transaction: old set disappears only if the new one lands
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM user_recovery_code WHERE user_id = %s", (user_id,)
                )
                for code in codes:
                    conn.execute(
                        """
                        INSERT INTO user_recovery_code (id, user_id, code_hash, created_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (code.id, code.user_id, code.code_hash, code.created_at),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for recovery codes", {"user_id": user_id}
            )
        return codes

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_recovery_code WHERE user_id = %s ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [
            RecoveryCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def delete_recovery_code(self, user_id: str, code_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM user_recovery_code WHERE id = %s AND user_id = %s RETURNING id",
                (code_id, user_id),
            ).fetchone()
        return row is not None

    # sessions
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
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=parse_ip(ip_addr),
            device_info=device_info,
            remember_me=remember_me,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, last_accessed,
                        user_agent, ip_addr, device_info, is_active, remember_me, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.last_accessed,
                        sess.user_agent,
                        sess.ip_addr,
                        _dump_json(device_info),
                        sess.is_active,
                        remember_me,
                        _dump_json(meta),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM auth_session WHERE id = %s", (session_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # Not a UUID, so it cannot name a session
            return None
        return self._row_to_session(row) if row else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def set_session_meta(self, session_id: str, meta: dict) -> None:
        if not isinstance(meta, dict):
            raise ValueError("session meta must be a dictionary")
        try:
            serialized_meta = json.dumps(meta)
        except TypeError as exc:
            raise ValueError("session meta must be JSON serializable") from exc
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (serialized_meta, session_id),
            )

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_accessed = %s WHERE id = %s",
                (at or utcnow(), session_id),
            )

    def deactivate_session(self, session_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE WHERE id = %s AND is_active RETURNING id",
                    (session_id,),
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return False
        return row is not None

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE "
                    "WHERE user_id = %s AND is_active AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                    (user_id,),
                )
            return result.rowcount or 0

    def expire_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE is_active AND expires_at <= %s",
                (now,),
            )
            conn.execute("DELETE FROM login_challenge WHERE expires_at <= %s", (now,))
            return result.rowcount or 0

    # pending two-factor logins
    def save_login_challenge(self, challenge: LoginChallenge) -> LoginChallenge:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO login_challenge (id, user_id, expires_at, remember_me, user_agent, ip_addr, methods)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        challenge.id,
                        challenge.user_id,
                        challenge.expires_at,
                        challenge.remember_me,
                        challenge.user_agent,
                        challenge.ip_addr,
                        _dump_json(challenge.methods),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": challenge.user_id})
        return challenge

    def get_login_challenge(self, challenge_id: str) -> Optional[LoginChallenge]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM login_challenge WHERE id = %s", (challenge_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        if not row:
            return None
        return LoginChallenge(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            remember_me=bool(row.get("remember_me", False)),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            methods=list(_json_value(row.get("methods")) or ["totp", "recovery_code"]),
        )

    def delete_login_challenge(self, challenge_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "DELETE FROM login_challenge WHERE id = %s RETURNING id", (challenge_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return False
        return row is not None

    # security log
    def append_security_log(self, entry: SecurityLogEntry) -> SecurityLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_log (id, user_id, event_type, ip, user_agent, device_info, location, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.event_type,
                    entry.ip,
                    entry.user_agent,
                    _dump_json(entry.device_info),
                    entry.location,
                    _dump_json(entry.metadata),
                    entry.created_at,
                ),
            )
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
        limit, offset = clamp_page(limit, offset)
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        where = " AND ".join(clauses)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM security_log WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM security_log WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_security_log(row) for row in rows], total
