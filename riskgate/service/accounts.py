from __future__ import annotations

from typing import Optional

from riskgate.logging import get_logger
from riskgate.service.errors import ErrorKind, ServiceError, conflict, not_found, validation_error
from riskgate.service.passwords import CredentialHasher, PasswordPolicy
from riskgate.storage.common import IdentityStore, normalize_identifier
from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.models import ROLE_USER, User, utcnow

logger = get_logger(__name__)


class AccountLifecycle:
    """Registration, administrator verification and self-service profile edits."""

    def __init__(
        self,
        store: IdentityStore,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        full_name: str,
    ) -> User:
        """Create an inactive, unverified USER account.

        Both unique fields are checked before anything is written so a caller
        learns about every collision at once. The insert itself still relies on
        the store's uniqueness guarantee for the race between two registrations.
        """

        username = normalize_identifier(username)
        email = normalize_identifier(email)
        collisions = []
        if self.store.get_user_by_username(username):
            collisions.append({"path": "username", "message": "username already taken"})
        if self.store.get_user_by_email(email):
            collisions.append({"path": "email", "message": "email already registered"})
        if collisions:
            raise conflict("username or email already registered", collisions)

        self.policy.ensure_complex(password)
        password_hash = await self.hasher.hash(password)
        try:
            with self.store.transaction():
                user = self.store.create_user(
                    username,
                    email,
                    password_hash,
                    full_name=full_name,
                    roles=(ROLE_USER,),
                    is_active=False,
                    is_verified=False,
                    password_changed_at=utcnow(),
                )
        except ConstraintViolation as exc:
            if exc.field not in ("username", "email"):
                logger.error(
                    "registration_store_rejected",
                    reason=exc.message,
                    detail=exc.detail,
                )
                raise ServiceError(ErrorKind.INTERNAL, "account could not be created") from exc
            logger.info("registration_conflict", field=exc.field)
            raise conflict(
                "username or email already registered",
                [{"path": exc.field, "message": exc.message}],
            ) from exc
        logger.info("user_registered", user_id=user.id, username=user.username)
        return user

    async def admin_verify(
        self,
        admin_id: str,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> User:
        if is_active is None and is_verified is None:
            raise validation_error(
                "at least one of isActive or isVerified is required",
                [{"path": "isActive", "message": "isActive or isVerified must be provided"}],
            )
        user = self.store.update_user_flags(
            user_id, is_active=is_active, is_verified=is_verified
        )
        if not user:
            raise not_found("User not found")
        logger.info(
            "user_verification_updated",
            admin_id=admin_id,
            user_id=user_id,
            is_active=user.is_active,
            is_verified=user.is_verified,
        )
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        if email is not None:
            email = normalize_identifier(email)
            owner = self.store.get_user_by_email(email)
            if owner and owner.id != user_id:
                raise conflict(
                    "email already registered",
                    [{"path": "email", "message": "email already registered"}],
                )
        try:
            user = self.store.update_profile(
                user_id, full_name=full_name, bio=bio, avatar=avatar, email=email
            )
        except ConstraintViolation as exc:
            raise conflict(
                "email already registered",
                [{"path": exc.field or "email", "message": exc.message}],
            ) from exc
        if not user:
            raise not_found("User not found")
        logger.info("profile_updated", user_id=user_id)
        return user
