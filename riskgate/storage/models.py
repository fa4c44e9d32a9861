from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


ROLE_USER = "USER"
ROLE_ADMINISTRATOR = "ADMINISTRATOR"
KNOWN_ROLES = (ROLE_USER, ROLE_ADMINISTRATOR)


class ResetStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


@dataclass
class Profile:
    full_name: str
    bio: Optional[str] = None
    avatar: Optional[str] = None


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    is_active: bool = False
    is_verified: bool = False
    must_change_password: bool = False
    password_changed_at: Optional[datetime] = None
    # Fernet token; plaintext never leaves TwoFactorService
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    roles: List[str] = field(default_factory=list)
    profile: Optional[Profile] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class UserSummary:
    id: str
    username: str
    email: str
    full_name: Optional[str] = None

    @classmethod
    def of(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.profile.full_name if user.profile else None,
        )


@dataclass
class Session:
    """The single live session of a user; ``user_id`` is the unique key."""

    id: str
    user_id: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token_hash: str
    expires_at: datetime
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        expires_at: datetime,
        device_id: str | None = None,
        device_name: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            access_token_expires_at=access_token_expires_at,
            refresh_token_hash=refresh_token_hash,
            expires_at=expires_at,
            device_id=device_id,
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            updated_at=now,
        )


@dataclass
class PasswordResetRequest:
    id: str
    identifier: str
    user_id: Optional[str] = None
    status: ResetStatus = ResetStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    validated_by_id: Optional[str] = None
    validated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    user: Optional[UserSummary] = None
    validated_by: Optional[UserSummary] = None
