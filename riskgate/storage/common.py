"""Repository contract shared by the memory and Postgres identity stores.

The services only talk to storage through :class:`IdentityStore`. Both
implementations must give the same guarantees:

- ``upsert_session`` is one atomic insert-or-update keyed by ``user_id``, so
  concurrent logins converge on a single row.
- ``rotate_session`` is a compare-and-swap on the stored refresh hash and
  never inserts, so a revoked or already rotated session stays gone.
- ``create_user`` writes the user, its profile and its role assignments as a
  unit and raises :class:`ConstraintViolation` on a username/email collision.
- ``mark_reset_completed`` only transitions a request that is still PENDING.
- ``transaction()`` makes every store call inside the block commit or roll
  back together. Callers must not ``await`` inside the block.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from riskgate.storage.models import (
    PasswordResetRequest,
    ResetStatus,
    Session,
    User,
)


def normalize_identifier(value: str) -> str:
    """Case-fold a username or email for lookups and uniqueness checks."""

    return (value or "").strip().lower()


class IdentityStore(Protocol):
    # users
    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        roles: Iterable[str] = ...,
        is_active: bool = False,
        is_verified: bool = False,
        password_changed_at: Optional[datetime] = None,
    ) -> User: ...

    def update_user_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> Optional[User]: ...

    def set_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        must_change_password: bool,
        password_changed_at: datetime,
    ) -> None: ...

    def set_totp(self, user_id: str, secret: Optional[str], *, enabled: bool) -> None: ...

    def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]: ...

    # sessions
    def upsert_session(self, session: Session) -> Session: ...

    def rotate_session(
        self, user_id: str, expected_refresh_hash: str, session: Session
    ) -> Optional[Session]:
        """Replace the user's session only while it still holds ``expected_refresh_hash``.

        Never inserts. Returns None when no row matched.
        """
        ...

    def get_session_for_user(self, user_id: str) -> Optional[Session]: ...

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def delete_session(self, user_id: str) -> bool: ...

    # password reset requests
    def create_reset_request(
        self, identifier: str, user_id: Optional[str]
    ) -> PasswordResetRequest: ...

    def get_reset_request(self, request_id: str) -> Optional[PasswordResetRequest]: ...

    def list_reset_requests(
        self, status: Optional[ResetStatus] = None
    ) -> List[PasswordResetRequest]: ...

    def mark_reset_completed(
        self, request_id: str, validated_by_id: str, at: datetime
    ) -> bool: ...

    def transaction(self) -> AbstractContextManager[None]: ...

    def close(self) -> None: ...
