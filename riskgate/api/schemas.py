from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from riskgate.logging import current_request_id
from riskgate.service.passwords import PasswordPolicy

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: current_request_id() or uuid4().hex)


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case is accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    # zero-width and bidi override characters can disguise lookalike identifiers
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
_TOTP_PATTERN = re.compile(r"^\d{6}$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 255:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError("username may only contain letters, digits and underscores")
    return normalized.lower()


def _validate_password(value: str) -> str:
    problems = PasswordPolicy.complexity_errors(value)
    if problems:
        raise ValueError("; ".join(problems))
    return value


def _validate_totp(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not _TOTP_PATTERN.match(value):
        raise ValueError("TOTP code must be 6 digits")
    return value


def _validate_avatar(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("avatar must be an http(s) URI")
    return value


# requests


class RegisterRequest(CamelModel):
    username: str = Field(..., min_length=3, max_length=255)
    email: str = Field(..., max_length=255)
    password: str
    full_name: str = Field(..., min_length=2, max_length=255)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("full_name")
    @classmethod
    def _strip_full_name(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class LoginRequest(CamelModel):
    # username or email
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=255)
    totp_code: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("totp_code")
    @classmethod
    def _check_totp(cls, value: Optional[str]) -> Optional[str]:
        return _validate_totp(value)


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=256)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=255)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password(value)


class UpdateProfileRequest(CamelModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    bio: Optional[str] = Field(default=None, max_length=1000)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    email: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("avatar")
    @classmethod
    def _check_avatar(cls, value: Optional[str]) -> Optional[str]:
        return _validate_avatar(value)


class ResetPasswordRequestBody(CamelModel):
    identifier: str = Field(..., min_length=1, max_length=255)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class CompleteResetRequest(CamelModel):
    request_id: str = Field(..., min_length=1, max_length=64)
    new_password: str
    admin_current_password: str = Field(..., min_length=1, max_length=255)

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password(value)


class VerifyUserRequest(CamelModel):
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None


class TotpTokenRequest(CamelModel):
    token: str

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        return _validate_totp(value)


# responses


class UserResponse(CamelModel):
    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    is_active: bool
    is_verified: bool
    must_change_password: bool = False
    has_profile: bool = False
    totp_enabled: bool = False
    roles: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class LoginResponse(CamelModel):
    user: UserResponse
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    next_action: str


class SecondFactorRequiredResponse(BaseModel):
    requires_2fa: bool = Field(True, serialization_alias="requires2FA")


class MessageResponse(BaseModel):
    message: str


class UserFlagsResponse(CamelModel):
    id: str
    username: str
    email: str
    is_active: bool
    is_verified: bool


class TotpEnrollmentResponse(CamelModel):
    secret: str
    provisioning_uri: str


class UserSummaryResponse(CamelModel):
    id: str
    username: str
    email: str
    full_name: Optional[str] = None


class ResetRequestResponse(CamelModel):
    id: str
    identifier: str
    status: str
    user_id: Optional[str] = None
    requested_at: datetime
    validated_by_id: Optional[str] = None
    validated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    user: Optional[UserSummaryResponse] = None
    validated_by: Optional[UserSummaryResponse] = None


class ResetRequestListResponse(BaseModel):
    items: List[ResetRequestResponse]
