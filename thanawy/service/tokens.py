from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional, Union

from thanawy.config import Settings
from thanawy.logging import get_logger
from thanawy.storage.models import Session, User, utcnow
from thanawy.storage.redis_cache import RedisCache, SyncRedisCache

if TYPE_CHECKING:
    from thanawy.service.auth import AuthStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass
class TokenClaims:
    user_id: str
    session_id: str
    token_type: str
    jti: str
    expires_at: datetime
    email: Optional[str] = None
    name: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            user_id=payload["sub"],
            session_id=payload["sid"],
            token_type=payload["typ"],
            jti=payload["jti"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            email=payload.get("email"),
            name=payload.get("name"),
            payload=dict(payload),
        )


class TokenService:
    """Mints and verifies HS256 access/refresh pairs bound to a session.

    Every successful ``verify`` re-reads the session from the store, so a
    revoked or expired session rejects tokens whose signature is still good.
    All failures come back as ``None``; callers never learn which check
    failed.
    """

    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        # jti -> unix expiry; entries past expiry are dropped on the next revoke
        self.revoked_refresh_tokens: dict[str, float] = {}

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Check signature, issuer, audience and expiry; no session lookup."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        if not all(payload.get(claim) for claim in ("sub", "sid", "typ", "jti")):
            return None
        return payload

    def _refresh_ttl_minutes(self, session: Session) -> int:
        if session.remember_me:
            return self.settings.remember_me_refresh_ttl_minutes
        return self.settings.refresh_token_ttl_minutes

    def issue(self, user: User, session: Session) -> TokenPair:
        now = utcnow()
        iat = int(now.timestamp())
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self._refresh_ttl_minutes(session))
        # A refresh token never outlives the session it belongs to
        refresh_exp = min(refresh_exp, session.expires_at)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "name": user.name,
            "sid": session.id,
            "iat": iat,
        }
        access_payload = {
            **base,
            "typ": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int(access_exp.timestamp()),
        }
        refresh_jti = str(uuid.uuid4())
        refresh_payload = {
            **base,
            "typ": REFRESH,
            "jti": refresh_jti,
            "exp": int(refresh_exp.timestamp()),
        }
        meta = dict(session.meta or {})
        meta.update(
            {"refresh_jti": refresh_jti, "refresh_exp": refresh_payload["exp"]}
        )
        session.meta = meta
        self.store.set_session_meta(session.id, meta)
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            access_expires_at=datetime.fromtimestamp(
                access_payload["exp"], tz=timezone.utc
            ),
            refresh_expires_at=datetime.fromtimestamp(
                refresh_payload["exp"], tz=timezone.utc
            ),
        )

    def verify(
        self, token: Optional[str], expected_type: str = ACCESS
    ) -> Optional[TokenClaims]:
        payload = self.decode(token)
        if not payload or payload.get("typ") != expected_type:
            return None
        session = self.store.get_session(payload["sid"])
        if not session or not session.is_usable():
            return None
        if session.user_id != payload["sub"]:
            return None
        return TokenClaims.from_payload(payload)

    @staticmethod
    def _refresh_token_matches(session: Session, jti: str) -> bool:
        meta = session.meta if isinstance(session.meta, dict) else {}
        exp_raw = meta.get("refresh_exp")
        if isinstance(exp_raw, (int, float)) and exp_raw <= time.time():
            return False
        current = meta.get("refresh_jti")
        return bool(current) and hmac.compare_digest(str(current), jti)

    async def refresh(
        self, refresh_token: Optional[str]
    ) -> Optional[tuple[TokenClaims, TokenPair]]:
        """Rotate a refresh token; the presented one is revoked on success."""
        claims = self.verify(refresh_token, expected_type=REFRESH)
        if not claims:
            return None
        if await self._is_refresh_revoked(claims.jti):
            logger.warning(
                "refresh_token_reused", session_id=claims.session_id
            )
            return None
        session = self.store.get_session(claims.session_id)
        if not session or not session.is_usable():
            return None
        if not self._refresh_token_matches(session, claims.jti):
            return None
        user = self.store.get_user(session.user_id)
        if not user:
            return None
        pair = self.issue(user, session)
        await self._revoke_refresh_token(claims.jti, claims.payload.get("exp"))
        self.store.touch_session(session.id)
        new_claims = self.decode(pair.access_token)
        return TokenClaims.from_payload(new_claims or {}), pair

    async def _revoke_refresh_token(self, jti: str, exp: Any = None) -> None:
        now = time.time()
        if isinstance(exp, (int, float)):
            ttl = max(int(exp - now), 1)
        else:
            ttl = self.settings.remember_me_refresh_ttl_minutes * 60
        self._prune_revoked(now)
        self.revoked_refresh_tokens[jti] = now + ttl
        if self.cache:
            try:
                await self.cache.mark_refresh_revoked(jti, ttl)
            except Exception as exc:
                logger.warning("cache_revoked_refresh_token_failed", error=str(exc))

    def _prune_revoked(self, now: float) -> None:
        expired = [jti for jti, until in self.revoked_refresh_tokens.items() if until <= now]
        for jti in expired:
            del self.revoked_refresh_tokens[jti]

    async def _is_refresh_revoked(self, jti: str) -> bool:
        if jti in self.revoked_refresh_tokens:
            return True
        if self.cache:
            try:
                return await self.cache.is_refresh_revoked(jti)
            except Exception as exc:
                # Fail closed: an unreachable cache cannot vouch for the token
                logger.warning(
                    "check_revoked_refresh_token_failed_defaulting_to_revoked",
                    error=str(exc),
                )
                return True
        return False


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
