from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from riskgate.logging import get_logger
from riskgate.storage.common import normalize_identifier
from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.models import (
    ROLE_USER,
    PasswordResetRequest,
    Profile,
    ResetStatus,
    Session,
    User,
    UserSummary,
    utcnow,
)


class MemoryStore:
    """In-process identity store for tests and local development.

    All reads return copies so callers cannot change stored rows without going
    through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # keyed by user_id: at most one session per user
        self.sessions: Dict[str, Session] = {}
        self.reset_requests: Dict[str, PasswordResetRequest] = {}
        # RLock so store methods can nest inside transaction()
        self._data_lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = copy.deepcopy((self.users, self.sessions, self.reset_requests))
            try:
                yield
            except BaseException:
                self.users, self.sessions, self.reset_requests = snapshot
                self.logger.info("memory_transaction_rolled_back")
                raise

    def close(self) -> None:
        return None

    # users
    def _find_user(self, predicate) -> Optional[User]:
        return next((u for u in self.users.values() if predicate(u)), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return copy.deepcopy(self.users.get(user_id))

    def get_user_by_username(self, username: str) -> Optional[User]:
        key = normalize_identifier(username)
        with self._data_lock:
            return copy.deepcopy(self._find_user(lambda u: u.username.lower() == key))

    def get_user_by_email(self, email: str) -> Optional[User]:
        key = normalize_identifier(email)
        with self._data_lock:
            return copy.deepcopy(self._find_user(lambda u: u.email.lower() == key))

    def find_user_by_identifier(self, identifier: str) -> Optional[User]:
        key = normalize_identifier(identifier)
        if not key:
            return None
        with self._data_lock:
            found = self._find_user(
                lambda u: u.username.lower() == key or u.email.lower() == key
            )
            return copy.deepcopy(found)

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        roles: Iterable[str] = (ROLE_USER,),
        is_active: bool = False,
        is_verified: bool = False,
        password_changed_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if self._find_user(lambda u: u.username.lower() == normalize_identifier(username)):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if self._find_user(lambda u: u.email.lower() == normalize_identifier(email)):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                is_active=is_active,
                is_verified=is_verified,
                password_changed_at=password_changed_at or now,
                roles=list(dict.fromkeys(roles)),
                profile=Profile(full_name=full_name) if full_name else None,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return copy.deepcopy(user)

    def update_user_flags(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if is_active is not None:
                user.is_active = is_active
            if is_verified is not None:
                user.is_verified = is_verified
            user.updated_at = utcnow()
            return copy.deepcopy(user)

    def set_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        must_change_password: bool,
        password_changed_at: datetime,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for password", {"user_id": user_id})
            user.password_hash = password_hash
            user.must_change_password = must_change_password
            user.password_changed_at = password_changed_at
            user.updated_at = utcnow()

    def set_totp(self, user_id: str, secret: Optional[str], *, enabled: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for totp", {"user_id": user_id})
            user.totp_secret = secret
            user.totp_enabled = enabled
            user.updated_at = utcnow()

    def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                owner = self._find_user(lambda u: u.email.lower() == normalize_identifier(email))
                if owner and owner.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = email
            profile = user.profile or Profile(full_name=full_name or user.username)
            if full_name is not None:
                profile.full_name = full_name
            if bio is not None:
                profile.bio = bio
            if avatar is not None:
                profile.avatar = avatar
            user.profile = profile
            user.updated_at = utcnow()
            return copy.deepcopy(user)

    # sessions
    def upsert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            existing = self.sessions.get(session.user_id)
            stored = session
            if existing:
                # row identity survives an upsert, like ON CONFLICT DO UPDATE
                stored = replace(session, id=existing.id, created_at=existing.created_at)
            self.sessions[session.user_id] = copy.deepcopy(stored)
            return copy.deepcopy(stored)

    def rotate_session(
        self, user_id: str, expected_refresh_hash: str, session: Session
    ) -> Optional[Session]:
        with self._data_lock:
            existing = self.sessions.get(user_id)
            if existing is None or existing.refresh_token_hash != expected_refresh_hash:
                return None
            stored = replace(
                session, id=existing.id, user_id=user_id, created_at=existing.created_at
            )
            self.sessions[user_id] = copy.deepcopy(stored)
            return copy.deepcopy(stored)

    def get_session_for_user(self, user_id: str) -> Optional[Session]:
        with self._data_lock:
            return copy.deepcopy(self.sessions.get(user_id))

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        if not access_token:
            return None
        with self._data_lock:
            found = next(
                (s for s in self.sessions.values() if s.access_token == access_token),
                None,
            )
            return copy.deepcopy(found)

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        if not refresh_token_hash:
            return None
        with self._data_lock:
            found = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return copy.deepcopy(found)

    def delete_session(self, user_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(user_id, None) is not None

    # password reset requests
    def create_reset_request(
        self, identifier: str, user_id: Optional[str]
    ) -> PasswordResetRequest:
        with self._data_lock:
            request = PasswordResetRequest(
                id=str(uuid.uuid4()),
                identifier=identifier,
                user_id=user_id,
                requested_at=utcnow(),
            )
            self.reset_requests[request.id] = request
            return copy.deepcopy(request)

    def _with_summaries(self, request: PasswordResetRequest) -> PasswordResetRequest:
        target = self.users.get(request.user_id) if request.user_id else None
        validator = (
            self.users.get(request.validated_by_id) if request.validated_by_id else None
        )
        return replace(
            copy.deepcopy(request),
            user=UserSummary.of(target) if target else None,
            validated_by=UserSummary.of(validator) if validator else None,
        )

    def get_reset_request(self, request_id: str) -> Optional[PasswordResetRequest]:
        with self._data_lock:
            request = self.reset_requests.get(request_id)
            return self._with_summaries(request) if request else None

    def list_reset_requests(
        self, status: Optional[ResetStatus] = None
    ) -> List[PasswordResetRequest]:
        with self._data_lock:
            results = [
                self._with_summaries(r)
                for r in self.reset_requests.values()
                if status is None or r.status == status
            ]
        return sorted(results, key=lambda r: r.requested_at, reverse=True)

    def mark_reset_completed(
        self, request_id: str, validated_by_id: str, at: datetime
    ) -> bool:
        with self._data_lock:
            request = self.reset_requests.get(request_id)
            if not request or request.status != ResetStatus.PENDING:
                return False
            request.status = ResetStatus.COMPLETED
            request.validated_by_id = validated_by_id
            request.validated_at = at
            request.completed_at = at
            return True
