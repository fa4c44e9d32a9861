from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from riskgate.config import Settings
from riskgate.storage.models import utcnow

ACCESS_TOKEN_BYTES = 32
REFRESH_TOKEN_BYTES = 64

_BROWSERS = (
    ("Chrome", lambda ua: "Chrome" in ua),
    ("Firefox", lambda ua: "Firefox" in ua),
    ("Safari", lambda ua: "Safari" in ua and "Chrome" not in ua),
    ("Edge", lambda ua: "Edge" in ua),
    ("Opera", lambda ua: "Opera" in ua),
)

_OPERATING_SYSTEMS = (
    ("Windows", lambda ua: "Windows" in ua),
    ("macOS", lambda ua: "Mac" in ua),
    ("Linux", lambda ua: "Linux" in ua),
    ("Android", lambda ua: "Android" in ua),
    ("iOS", lambda ua: "iOS" in ua or "iPhone" in ua),
)


@dataclass(frozen=True)
class DeviceContext:
    """Where a login came from. Labels a session; never used to authenticate it."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class DeviceFingerprint:
    """Derives a stable device id and a human-readable device name."""

    def device_id(self, device: DeviceContext) -> str:
        raw = f"{device.user_agent or 'unknown'}-{device.ip_address or 'unknown'}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def device_name(self, user_agent: Optional[str]) -> str:
        if not user_agent:
            return "Unknown Device"
        browser = next(
            (name for name, match in _BROWSERS if match(user_agent)), "Unknown Browser"
        )
        os_name = next(
            (name for name, match in _OPERATING_SYSTEMS if match(user_agent)), "Unknown OS"
        )
        return f"{browser} on {os_name}"

    @staticmethod
    def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
        """Resolve the caller address, preferring proxy headers."""

        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
        return remote_addr or "unknown"


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_hash: str
    refresh_token_expires_at: datetime


class TokenService:
    """Mints opaque bearer credentials and computes their expiries."""

    def __init__(
        self, settings: Settings, fingerprint: Optional[DeviceFingerprint] = None
    ) -> None:
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.fingerprint = fingerprint or DeviceFingerprint()

    @staticmethod
    def generate_access_token() -> str:
        return secrets.token_hex(ACCESS_TOKEN_BYTES)

    @staticmethod
    def generate_refresh_token() -> str:
        return secrets.token_hex(REFRESH_TOKEN_BYTES)

    @staticmethod
    def hash(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def matches(self, token: str, stored_hash: str) -> bool:
        return hmac.compare_digest(self.hash(token), stored_hash or "")

    def access_token_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + self.access_ttl

    def refresh_token_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + self.refresh_ttl

    def issue(self, now: Optional[datetime] = None) -> IssuedTokens:
        issued_at = now or utcnow()
        refresh_token = self.generate_refresh_token()
        return IssuedTokens(
            access_token=self.generate_access_token(),
            access_token_expires_at=self.access_token_expiry(issued_at),
            refresh_token=refresh_token,
            refresh_token_hash=self.hash(refresh_token),
            refresh_token_expires_at=self.refresh_token_expiry(issued_at),
        )
