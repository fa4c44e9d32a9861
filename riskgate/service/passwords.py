from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.errors import (
    authentication_error,
    not_found,
    validation_error,
)
from riskgate.storage.common import IdentityStore
from riskgate.storage.models import PasswordResetRequest, ResetStatus, User, utcnow

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 255
PASSWORD_SPECIAL_CHARS = "@$!%*?&#^()_-+="
_ALLOWED_PASSWORD = re.compile(r"^[A-Za-z\d" + re.escape(PASSWORD_SPECIAL_CHARS) + r"]+$")

RESET_REQUESTED_MESSAGE = "Password reset request is awaiting administrator verification"


class PasswordPolicy:
    """Complexity and expiry rules for user passwords."""

    def __init__(self, expire_days: int) -> None:
        self.max_age = timedelta(days=expire_days)

    @staticmethod
    def complexity_errors(password: str) -> List[str]:
        problems: List[str] = []
        if len(password) < PASSWORD_MIN_LENGTH:
            problems.append(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
        if len(password) > PASSWORD_MAX_LENGTH:
            problems.append(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
        if not re.search(r"[a-z]", password):
            problems.append("password must contain a lowercase letter")
        if not re.search(r"[A-Z]", password):
            problems.append("password must contain an uppercase letter")
        if not re.search(r"\d", password):
            problems.append("password must contain a digit")
        if not any(ch in PASSWORD_SPECIAL_CHARS for ch in password):
            problems.append(
                f"password must contain one of these special characters: {PASSWORD_SPECIAL_CHARS}"
            )
        if password and not _ALLOWED_PASSWORD.match(password):
            problems.append("password contains characters that are not allowed")
        return problems

    def ensure_complex(self, password: str, *, path: str = "password") -> None:
        problems = self.complexity_errors(password)
        if problems:
            raise validation_error(
                "password does not meet complexity requirements",
                [{"path": path, "message": message} for message in problems],
            )

    def is_expired(self, user: User, now: Optional[datetime] = None) -> bool:
        if not user.password_changed_at:
            return False
        return (now or utcnow()) - user.password_changed_at > self.max_age


class CredentialHasher:
    """argon2id hashing, executed off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            type=Type.ID,
        )
        # verified against for unknown users so failures cost the same
        self._dummy_hash = self._hasher.hash("riskgate-timing-equalizer")

    def hash_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, password_hash: Optional[str], password: str) -> bool:
        try:
            return self._hasher.verify(password_hash or self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, password_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password_hash, password)

    async def burn(self, password: str) -> None:
        """Spend one verification on the dummy hash."""

        await self.verify(None, password)


class PasswordPolicyEngine:
    """Password change, administrator-mediated reset and expiry enforcement."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        hasher: CredentialHasher,
        policy: Optional[PasswordPolicy] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy or PasswordPolicy(settings.password_expire_days)

    def _now(self) -> datetime:
        return utcnow()

    async def change_password(self, user_id: str, current: str, new: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise not_found("User not found")
        if not await self.hasher.verify(user.password_hash, current):
            logger.warning("password_change_rejected", user_id=user_id, reason="current_mismatch")
            raise authentication_error("Current password is incorrect")
        if await self.hasher.verify(user.password_hash, new):
            raise validation_error(
                "cannot reuse current password",
                [{"path": "newPassword", "message": "cannot reuse current password"}],
            )
        self.policy.ensure_complex(new, path="newPassword")
        new_hash = await self.hasher.hash(new)
        with self.store.transaction():
            self.store.set_password(
                user_id,
                new_hash,
                must_change_password=False,
                password_changed_at=self._now(),
            )
            self.store.delete_session(user_id)
        logger.info("password_changed", user_id=user_id)

    async def request_reset(self, identifier: str) -> str:
        """Record a reset request; the reply never reveals whether the account exists."""

        user = self.store.find_user_by_identifier(identifier)
        if user:
            request = self.store.create_reset_request(identifier, user.id)
            logger.info("password_reset_requested", request_id=request.id, user_id=user.id)
        else:
            logger.info("password_reset_requested_unknown_identifier")
        return RESET_REQUESTED_MESSAGE

    def list_reset_requests(
        self, status: Optional[ResetStatus] = None
    ) -> List[PasswordResetRequest]:
        return self.store.list_reset_requests(status)

    async def complete_reset(
        self,
        admin_id: str,
        request_id: str,
        new_password: str,
        admin_current_password: str,
    ) -> PasswordResetRequest:
        admin = self.store.get_user(admin_id)
        if not admin or not await self.hasher.verify(admin.password_hash, admin_current_password):
            logger.warning("password_reset_admin_reauth_failed", admin_id=admin_id)
            raise authentication_error("Administrator password is incorrect")
        request = self.store.get_reset_request(request_id)
        if not request or not request.user_id:
            raise not_found("Password reset request not found")
        if request.status != ResetStatus.PENDING:
            raise validation_error("Password reset request has already been processed")
        self.policy.ensure_complex(new_password, path="newPassword")
        new_hash = await self.hasher.hash(new_password)
        now = self._now()
        with self.store.transaction():
            # conditional transition; a concurrent completion loses here
            if not self.store.mark_reset_completed(request.id, admin_id, now):
                raise validation_error("Password reset request has already been processed")
            self.store.set_password(
                request.user_id,
                new_hash,
                must_change_password=True,
                password_changed_at=now,
            )
            self.store.delete_session(request.user_id)
        logger.info(
            "password_reset_completed",
            request_id=request.id,
            user_id=request.user_id,
            admin_id=admin_id,
        )
        completed = self.store.get_reset_request(request.id)
        return completed or request


__all__ = [
    "CredentialHasher",
    "PasswordPolicy",
    "PasswordPolicyEngine",
    "PASSWORD_SPECIAL_CHARS",
    "RESET_REQUESTED_MESSAGE",
]
