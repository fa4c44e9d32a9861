from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from riskgate.logging import get_logger
from riskgate.service.errors import authentication_error, authorization_error
from riskgate.service.guard import AuthGuard
from riskgate.service.passwords import CredentialHasher, PasswordPolicy
from riskgate.service.tokens import DeviceContext, TokenService
from riskgate.service.totp import TwoFactorService
from riskgate.storage.common import IdentityStore
from riskgate.storage.models import Session, User, utcnow

logger = get_logger(__name__)

# one message for unknown user, wrong password and wrong TOTP code
INVALID_CREDENTIALS = "Invalid username/email or password"


class NextAction(str, Enum):
    MUST_CHANGE_PASSWORD = "MUST_CHANGE_PASSWORD"
    PROFILE_REQUIRED = "PROFILE_REQUIRED"
    DASHBOARD = "DASHBOARD"


@dataclass
class LoginResult:
    requires_2fa: bool = False
    user: Optional[User] = None
    session: Optional[Session] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    next_action: Optional[NextAction] = None


def next_action_for(user: User) -> NextAction:
    if user.must_change_password:
        return NextAction.MUST_CHANGE_PASSWORD
    if user.profile is None:
        return NextAction.PROFILE_REQUIRED
    return NextAction.DASHBOARD


class SessionManager:
    """Login, logout and refresh for the single session each user may hold."""

    def __init__(
        self,
        store: IdentityStore,
        tokens: TokenService,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        two_factor: TwoFactorService,
        guard: AuthGuard,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.policy = policy
        self.two_factor = two_factor
        self.guard = guard

    def _now(self) -> datetime:
        return utcnow()

    async def login(
        self,
        identifier: str,
        password: str,
        totp_code: Optional[str] = None,
        device: Optional[DeviceContext] = None,
    ) -> LoginResult:
        device = device or DeviceContext()
        user = self.store.find_user_by_identifier(identifier)
        if not user:
            await self.hasher.burn(password)
            logger.info("login_failed", reason="unknown_identifier")
            raise authentication_error(INVALID_CREDENTIALS)
        if not await self.hasher.verify(user.password_hash, password):
            logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise authentication_error(INVALID_CREDENTIALS)

        # account state is only revealed to callers who know the password
        if not user.is_verified:
            raise authorization_error("Account has not been verified")
        if not user.is_active:
            raise authorization_error("Account is not active. Contact an administrator")
        now = self._now()
        if self.policy.is_expired(user, now):
            logger.info("login_blocked_password_expired", user_id=user.id)
            raise authorization_error("Password expired. Contact an administrator")

        if user.totp_enabled:
            if not totp_code:
                logger.info("login_requires_second_factor", user_id=user.id)
                return LoginResult(requires_2fa=True)
            if not await self.two_factor.verify_during_login(user.totp_secret, totp_code):
                logger.info("login_failed", reason="totp_mismatch", user_id=user.id)
                raise authentication_error(INVALID_CREDENTIALS)

        session, access_token, refresh_token = self._issue_session(user.id, device, now)
        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            device_name=session.device_name,
        )
        return LoginResult(
            user=user,
            session=session,
            access_token=access_token,
            refresh_token=refresh_token,
            next_action=next_action_for(user),
        )

    def _candidate_session(
        self, user_id: str, device: DeviceContext, now: datetime
    ) -> tuple[Session, str, str]:
        issued = self.tokens.issue(now)
        fingerprint = self.tokens.fingerprint
        candidate = Session.new(
            user_id,
            access_token=issued.access_token,
            access_token_expires_at=issued.access_token_expires_at,
            refresh_token_hash=issued.refresh_token_hash,
            expires_at=issued.refresh_token_expires_at,
            device_id=fingerprint.device_id(device),
            device_name=fingerprint.device_name(device.user_agent),
            user_agent=device.user_agent,
            ip_address=device.ip_address,
        )
        return candidate, issued.access_token, issued.refresh_token

    def _issue_session(
        self, user_id: str, device: DeviceContext, now: datetime
    ) -> tuple[Session, str, str]:
        candidate, access_token, refresh_token = self._candidate_session(user_id, device, now)
        # single atomic write keyed by user_id replaces any session on another device
        session = self.store.upsert_session(candidate)
        return session, access_token, refresh_token

    async def logout(self, user_id: str) -> bool:
        """Remove the user's session. Succeeds whether or not one existed."""

        removed = self.store.delete_session(user_id)
        logger.info("logout", user_id=user_id, session_removed=removed)
        return removed

    async def refresh(
        self, refresh_token: str, device: Optional[DeviceContext] = None
    ) -> LoginResult:
        """Rotate both tokens for the session that owns ``refresh_token``.

        The rotation only lands while the stored row still carries the
        presented hash, so a replayed token or a session revoked in the
        meantime (logout, password change, reset) ends in 401.
        """

        if not refresh_token:
            raise authentication_error("Missing refresh token")
        presented_hash = self.tokens.hash(refresh_token)
        session = self.store.get_session_by_refresh_hash(presented_hash)
        if not session:
            raise authentication_error("Invalid refresh token")
        now = self._now()
        if session.expires_at <= now:
            self.store.delete_session(session.user_id)
            logger.info("refresh_token_expired", user_id=session.user_id)
            raise authentication_error("Refresh token expired")
        user = self.guard.check_account(session, now)
        device = device or DeviceContext(
            user_agent=session.user_agent, ip_address=session.ip_address
        )
        candidate, access_token, new_refresh = self._candidate_session(user.id, device, now)
        rotated = self.store.rotate_session(user.id, presented_hash, candidate)
        if rotated is None:
            logger.warning("refresh_rotation_lost", user_id=user.id)
            raise authentication_error("Invalid refresh token")
        logger.info("session_refreshed", user_id=user.id, session_id=rotated.id)
        return LoginResult(
            user=user,
            session=rotated,
            access_token=access_token,
            refresh_token=new_refresh,
            next_action=next_action_for(user),
        )
