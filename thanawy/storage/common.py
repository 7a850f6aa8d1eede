"""Helpers shared by the memory and postgres stores.

Keeps email normalisation, IP parsing, secret encryption and security-log
filtering identical across both back ends.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from ipaddress import ip_address, ip_network
from typing import Iterable, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken

from thanawy.logging import get_logger
from thanawy.storage.models import SecurityLogEntry

logger = get_logger(__name__)

MAX_SECURITY_LOG_PAGE = 100


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def parse_ip(raw: Optional[str]) -> Optional[str]:
    """Return a canonical IP string, or None when the value is not an address."""
    if raw is None:
        return None
    candidate = str(raw).strip()
    if not candidate:
        return None
    # Chains keep only their first address
    candidate = candidate.split(",")[0].strip()
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def client_ip(
    peer: Optional[str],
    forwarded_for: Optional[str],
    trusted_proxies: Sequence[str] = (),
) -> Optional[str]:
    """Resolve the caller's address from the socket peer and X-Forwarded-For.

    The header is read only when the peer is a trusted proxy. Hops are walked
    right to left past trusted proxies; the first untrusted hop is the client.
    """
    peer_ip = parse_ip(peer)
    if not forwarded_for or peer_ip is None or not trusted_proxies:
        return peer_ip
    networks = [ip_network(entry, strict=False) for entry in trusted_proxies]

    def trusted(address: str) -> bool:
        parsed = ip_address(address)
        return any(parsed in network for network in networks)

    if not trusted(peer_ip):
        return peer_ip
    for hop in reversed(forwarded_for.split(",")):
        hop_ip = parse_ip(hop)
        if hop_ip is None:
            return peer_ip
        if not trusted(hop_ip):
            return hop_ip
    return peer_ip


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the raw secret
            logger.warning("mfa_secret_decrypt_failed")
            return token


def clamp_page(limit: int, offset: int) -> Tuple[int, int]:
    limit = max(1, min(int(limit), MAX_SECURITY_LOG_PAGE))
    offset = max(0, int(offset))
    return limit, offset


def filter_security_logs(
    entries: Iterable[SecurityLogEntry],
    user_id: str,
    *,
    event_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[SecurityLogEntry], int]:
    """Scope to one user, filter by type/time window, newest first, then page."""
    limit, offset = clamp_page(limit, offset)
    matched = [
        entry
        for entry in entries
        if entry.user_id == user_id
        and (not event_type or entry.event_type == event_type)
        and (since is None or entry.created_at >= since)
        and (until is None or entry.created_at <= until)
    ]
    matched.sort(key=lambda e: e.created_at, reverse=True)
    return matched[offset : offset + limit], len(matched)
