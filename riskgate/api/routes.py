from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from riskgate.api.schemas import (
    ChangePasswordRequest,
    CompleteResetRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequestBody,
    ResetRequestListResponse,
    ResetRequestResponse,
    SecondFactorRequiredResponse,
    TotpEnrollmentResponse,
    TotpTokenRequest,
    UpdateProfileRequest,
    UserFlagsResponse,
    UserResponse,
    UserSummaryResponse,
    VerifyUserRequest,
)
from riskgate.logging import get_logger
from riskgate.service.guard import Principal
from riskgate.service.runtime import Runtime, check_rate_limit, get_runtime
from riskgate.service.sessions import LoginResult
from riskgate.service.tokens import DeviceContext, DeviceFingerprint
from riskgate.storage.models import (
    ROLE_ADMINISTRATOR,
    PasswordResetRequest,
    ResetStatus,
    User,
    UserSummary,
)

logger = get_logger(__name__)

router = APIRouter()

REFRESH_COOKIE = "refreshToken"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> None:
    """Raise 429 once the caller has spent the bucket for ``key``."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if not allowed:
        logger.warning("rate_limited", limit=limit, window_seconds=window_seconds)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(retry_after, 1))},
        )


async def get_user(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.guard.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    principal = await runtime.guard.authenticate(authorization)
    return runtime.guard.require_role(principal, ROLE_ADMINISTRATOR)


def _device_from_request(request: Request) -> DeviceContext:
    remote = request.client.host if request.client else None
    return DeviceContext(
        user_agent=request.headers.get("user-agent"),
        ip_address=DeviceFingerprint.client_ip(request.headers, remote),
    )


def _user_to_response(user: User) -> UserResponse:
    profile = user.profile
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        full_name=profile.full_name if profile else None,
        bio=profile.bio if profile else None,
        avatar=profile.avatar if profile else None,
        is_active=user.is_active,
        is_verified=user.is_verified,
        must_change_password=user.must_change_password,
        has_profile=profile is not None,
        totp_enabled=user.totp_enabled,
        roles=list(user.roles),
        created_at=user.created_at,
    )


def _summary_to_response(summary: Optional[UserSummary]) -> Optional[UserSummaryResponse]:
    if summary is None:
        return None
    return UserSummaryResponse(
        id=summary.id,
        username=summary.username,
        email=summary.email,
        full_name=summary.full_name,
    )


def _reset_to_response(request: PasswordResetRequest) -> ResetRequestResponse:
    return ResetRequestResponse(
        id=request.id,
        identifier=request.identifier,
        status=request.status.value,
        user_id=request.user_id,
        requested_at=request.requested_at,
        validated_by_id=request.validated_by_id,
        validated_at=request.validated_at,
        completed_at=request.completed_at,
        user=_summary_to_response(request.user),
        validated_by=_summary_to_response(request.validated_by),
    )


def _apply_refresh_cookie(response: Response, runtime: Runtime, refresh_token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="strict",
        max_age=runtime.settings.refresh_cookie_max_age_seconds,
        path="/",
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        secure=runtime.settings.is_production,
        httponly=True,
        samesite="strict",
    )


def _session_envelope(response: Response, runtime: Runtime, result: LoginResult) -> Envelope:
    _apply_refresh_cookie(response, runtime, result.refresh_token)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=_user_to_response(result.user),
            access_token=result.access_token,
            access_token_expires_at=result.session.access_token_expires_at,
            refresh_token=result.refresh_token,
            next_action=result.next_action.value,
        ),
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def register(body: RegisterRequest):
    """Create an inactive, unverified account awaiting administrator approval.

    Raises:
        400: If any field fails validation (every failing field is reported)
        409: If the username or email is already registered
    """
    runtime = get_runtime()
    user = await runtime.accounts.register(
        username=body.username,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/users/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username or email, password and optional TOTP code.

    A user with 2FA enabled who omits the code gets ``{"requires2FA": true}``
    and no session. Any earlier session of the user is replaced.

    Raises:
        401: If the identifier, password or TOTP code is wrong
        403: If the account is unverified, inactive or its password expired
        429: If the login rate limit for this identifier is exhausted
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.sessions.login(
        body.username,
        body.password,
        totp_code=body.totp_code,
        device=_device_from_request(request),
    )
    if result.requires_2fa:
        return Envelope(status="ok", data=SecondFactorRequiredResponse())
    return _session_envelope(response, runtime, result)


@router.post("/users/refresh", response_model=Envelope, tags=["users"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error("unauthorized", "Missing refresh token", status_code=401)
    result = await runtime.sessions.refresh(token, device=_device_from_request(request))
    return _session_envelope(response, runtime, result)


@router.delete("/users/logout", response_model=Envelope, tags=["users"])
async def logout(response: Response, principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    await runtime.sessions.logout(principal.user_id)
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.get("/users/current", response_model=Envelope, tags=["users"])
async def current_user(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "User not found", status_code=404)
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/users/current", response_model=Envelope, tags=["users"])
async def update_current_user(
    body: UpdateProfileRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.accounts.update_profile(
        principal.user_id,
        full_name=body.full_name,
        bio=body.bio,
        avatar=body.avatar,
        email=body.email,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/users/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: Principal = Depends(get_user),
):
    """Change the caller's password. The current session ends; log in again."""
    runtime = get_runtime()
    await runtime.passwords.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_refresh_cookie(response, runtime)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password changed. Please log in again"),
    )


@router.post("/users/reset-password/request", response_model=Envelope, tags=["users"])
async def request_password_reset(body: ResetPasswordRequestBody, request: Request):
    """Queue a reset for administrator review; the reply is identical for unknown accounts."""
    runtime = get_runtime()
    remote = request.client.host if request.client else None
    await _enforce_rate_limit(
        runtime,
        f"reset:{DeviceFingerprint.client_ip(request.headers, remote)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    message = await runtime.passwords.request_reset(body.identifier)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/users/2fa/generate", response_model=Envelope, tags=["2fa"])
async def generate_two_factor(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    enrollment = await runtime.two_factor.generate(principal.user_id)
    return Envelope(
        status="ok",
        data=TotpEnrollmentResponse(
            secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri
        ),
    )


@router.post("/users/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(body: TotpTokenRequest, principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    await runtime.two_factor.enable(principal.user_id, body.token)
    return Envelope(status="ok", data=MessageResponse(message="2FA enabled"))


@router.post("/users/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    await runtime.two_factor.disable(principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="2FA disabled"))


@router.get("/admin/password-reset/requests", response_model=Envelope, tags=["admin"])
async def admin_list_reset_requests(
    status: Optional[ResetStatus] = Query(None),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    requests = runtime.passwords.list_reset_requests(status)
    return Envelope(
        status="ok",
        data=ResetRequestListResponse(items=[_reset_to_response(r) for r in requests]),
    )


@router.post("/admin/password-reset/complete", response_model=Envelope, tags=["admin"])
async def admin_complete_reset(
    body: CompleteResetRequest, principal: Principal = Depends(get_admin_user)
):
    """Set a new temporary password for the requesting user.

    The administrator re-enters their own password. The target user must
    change the password at next login and loses any live session.
    """
    runtime = get_runtime()
    completed = await runtime.passwords.complete_reset(
        principal.user_id,
        body.request_id,
        body.new_password,
        body.admin_current_password,
    )
    return Envelope(status="ok", data=_reset_to_response(completed))


@router.patch("/admin/users/{user_id}/verify", response_model=Envelope, tags=["admin"])
async def admin_verify_user(
    user_id: str,
    body: VerifyUserRequest,
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.accounts.admin_verify(
        principal.user_id,
        user_id,
        is_active=body.is_active,
        is_verified=body.is_verified,
    )
    return Envelope(
        status="ok",
        data=UserFlagsResponse(
            id=user.id,
            username=user.username,
            email=user.email,
            is_active=user.is_active,
            is_verified=user.is_verified,
        ),
    )
