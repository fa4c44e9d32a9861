from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.errors import authentication_error, authorization_error
from riskgate.service.passwords import PasswordPolicy
from riskgate.storage.common import IdentityStore
from riskgate.storage.models import Session, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated identity handed to downstream request handlers."""

    user_id: str
    username: str
    roles: Tuple[str, ...] = field(default_factory=tuple)
    session_id: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        return None
    return token


class AuthGuard:
    """Resolves a bearer token to a principal, re-checking account state each time."""

    def __init__(
        self, store: IdentityStore, settings: Settings, policy: PasswordPolicy
    ) -> None:
        self.store = store
        self.policy = policy
        self.enforce_verification = settings.enforce_verification_on_requests

    def _now(self) -> datetime:
        return utcnow()

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        if not authorization:
            raise authentication_error("Missing bearer token")
        token = extract_bearer(authorization)
        if not token:
            raise authentication_error("Malformed authorization header")
        session = self.store.get_session_by_access_token(token)
        if not session:
            raise authentication_error("Invalid or expired token")
        now = self._now()
        if session.access_token_expires_at <= now:
            logger.info("access_token_expired", user_id=session.user_id)
            raise authentication_error("Invalid or expired token")
        user = self.check_account(session, now)
        return Principal(
            user_id=user.id,
            username=user.username,
            roles=tuple(user.roles),
            session_id=session.id,
        )

    def check_account(self, session: Session, now: Optional[datetime] = None) -> User:
        """Account-state checks shared by request validation and token refresh."""

        now = now or self._now()
        user = self.store.get_user(session.user_id)
        if not user:
            # deleted accounts are indistinguishable from revoked sessions
            raise authentication_error("Invalid or expired token")
        if not user.is_active:
            raise authorization_error("Account is not active")
        if self.enforce_verification and not user.is_verified:
            raise authorization_error("Account has not been verified")
        if user.password_changed_at and session.updated_at < user.password_changed_at:
            logger.info("session_predates_password_change", user_id=user.id)
            raise authentication_error("Password changed since this session was issued")
        if self.policy.is_expired(user, now):
            raise authorization_error("Password expired. Contact an administrator")
        return user

    @staticmethod
    def require_role(principal: Principal, role: str) -> Principal:
        if not principal.has_role(role):
            logger.warning("role_required", user_id=principal.user_id, role=role)
            raise authorization_error(f"{role} role required")
        return principal
