from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from deepref_auth.api.schemas import (
    AccountResponse,
    AuthResponse,
    BackupCodesResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MagicLinkRequest,
    MagicLinkVerifyRequest,
    MFAChallengeRequest,
    MFAChallengeResponse,
    MFACodeRequest,
    MFASetupResponse,
    MFAStatusResponse,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetValidate,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    TokenRefreshRequest,
    TokenResponse,
    TrustedDeviceResponse,
)
from deepref_auth.logging import get_logger
from deepref_auth.service.auth import AuthContext, SignInResult
from deepref_auth.service.errors import AuthenticationError, ForbiddenError
from deepref_auth.service.mfa import check_mfa_gate
from deepref_auth.service.runtime import check_rate_limit, get_runtime
from deepref_auth.service.sessions import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MINUTE = 60
HOUR = 60 * 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    *,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429 with ``Retry-After``."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        retry_after = max(1, reset_seconds)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Authenticated principal; pending second factor is allowed."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_verified_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    check_mfa_gate(principal)
    return principal


async def get_admin_user(principal: AuthContext = Depends(get_verified_user)) -> AuthContext:
    if principal.role != "admin":
        raise ForbiddenError("admin access required")
    return principal


def _auth_response(result: SignInResult) -> AuthResponse:
    tokens = result.tokens
    return AuthResponse(
        account_id=result.account.id,
        email=result.account.email,
        role=result.account.role,
        email_verified=result.account.email_verified,
        session_id=tokens.session_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        mfa_required=result.mfa_required,
        mfa_challenge_id=result.challenge_id,
        mfa_method=result.mfa_method,
    )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        session_id=tokens.session_id,
        expires_at=tokens.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        mfa_verified=tokens.mfa_verified,
    )


# -- sign-up / sign-in -------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account, email a verification code and start a session.

    Raises:
        403: signup disabled
        409: email already registered
        400: password fails the strength policy
        429: more than 5 attempts per minute for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"signup:{body.email}", 5, MINUTE, response=response)
    result = await asyncio.to_thread(
        runtime.auth.signup, body.email, body.password, _client_ip(request), _user_agent(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify email and password and start a session.

    MFA accounts on an untrusted device receive a pending session plus a
    challenge id; the access token only passes the MFA gate after
    ``/auth/mfa/verify``.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"login:{body.email}", 5, MINUTE, response=response)
    result = await asyncio.to_thread(
        runtime.auth.signin, body.email, body.password, _client_ip(request), _user_agent(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"verify-email:{body.email}", 3, 5 * MINUTE)
    account = await asyncio.to_thread(runtime.auth.verify_email, body.email, body.code)
    return Envelope(status="ok", data={"email_verified": account.email_verified})


@router.post("/auth/magic-link", response_model=Envelope, tags=["auth"])
async def request_magic_link(body: MagicLinkRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"magic-link:{body.email}", 3, 5 * MINUTE)
    message = await asyncio.to_thread(runtime.auth.request_magic_link, body.email)
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link(body: MagicLinkVerifyRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"magic-link-verify:{_client_ip(request)}", 3, 5 * MINUTE
    )
    result = await asyncio.to_thread(
        runtime.auth.verify_magic_link, body.token, _client_ip(request), _user_agent(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


# -- refresh / logout ---------------------------------------------------------


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    """Rotate a refresh token. The presented token stops working immediately."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"refresh:{_client_ip(request)}", 10, MINUTE, response=response
    )
    tokens = runtime.sessions.refresh(
        body.refresh_token, _client_ip(request), _user_agent(request)
    )
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"logout:{_client_ip(request)}", 20, MINUTE)
    result = runtime.sessions.logout(body.refresh_token, all_devices=body.all_devices)
    if authorization:
        try:
            principal = await runtime.auth.authenticate(authorization)
        except AuthenticationError:
            principal = None
        if principal is not None:
            await runtime.auth.revoke_access_token(principal)
    return Envelope(status="ok", data=result)


# -- password lifecycle -------------------------------------------------------


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset:{body.email}", 3, HOUR)
    await asyncio.to_thread(runtime.passwords.request_reset, body.email)
    # Identical answer for unknown emails
    return Envelope(
        status="ok",
        data={"message": "If an account exists, a password reset link has been sent."},
    )


@router.post("/auth/reset/validate", response_model=Envelope, tags=["auth"])
async def validate_reset(body: PasswordResetValidate, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset-validate:{_client_ip(request)}", 5, HOUR)
    account = runtime.passwords.validate_reset_token(body.token)
    return Envelope(status="ok", data={"valid": True, "email": account.email})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset-confirm:{_client_ip(request)}", 5, HOUR)
    await asyncio.to_thread(runtime.passwords.reset_password, body.token, body.new_password)
    return Envelope(
        status="ok", data={"success": True, "message": "Password has been reset successfully"}
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_verified_user),
):
    """Change the password; every other session of the account is revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"password-change:{principal.account_id}", 5, HOUR)
    revoked = await asyncio.to_thread(
        runtime.passwords.change_password,
        principal.account_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(
        status="ok",
        data={
            "success": True,
            "message": "Password changed successfully",
            "sessions_revoked": revoked,
        },
    )


# -- sessions -----------------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_active_sessions(principal.account_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[
                SessionResponse(
                    id=s.id,
                    device_name=s.device_name,
                    ip_addr=s.ip_addr,
                    last_used_at=s.last_used_at,
                    created_at=s.created_at,
                    current=s.id == principal.session_id,
                )
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    runtime.sessions.revoke_session(principal.account_id, session_id)
    return Envelope(status="ok", data={"success": True})


@router.post("/auth/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"revoke-all:{principal.account_id}", 3, HOUR)
    result = runtime.sessions.revoke_all_sessions(principal.account_id)
    await runtime.auth.revoke_access_token(principal)
    return Envelope(status="ok", data=result)


# -- MFA ----------------------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    account = runtime.auth.get_account(principal.account_id)
    data = runtime.mfa.setup_totp(account)
    return Envelope(status="ok", data=MFASetupResponse(**data))


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_confirm(
    body: MFACodeRequest, request: Request, principal: AuthContext = Depends(get_verified_user)
):
    runtime = get_runtime()
    await runtime.mfa_limiter.hit(principal.account_id, _client_ip(request))
    data = await asyncio.to_thread(runtime.mfa.confirm_totp, principal.account_id, body.code)
    await runtime.mfa_limiter.reset(principal.account_id, _client_ip(request))
    return Envelope(status="ok", data=data)


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["mfa"])
async def mfa_challenge(
    body: MFAChallengeRequest, request: Request, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    challenge = await asyncio.to_thread(
        runtime.mfa.create_challenge,
        principal.account_id,
        body.method,
        _client_ip(request),
        _user_agent(request),
    )
    return Envelope(
        status="ok",
        data=MFAChallengeResponse(
            challenge_id=challenge.id, method=challenge.method, expires_at=challenge.expires_at
        ),
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MFAVerifyRequest, request: Request, principal: AuthContext = Depends(get_user)
):
    """Complete the second factor for the calling session.

    Returns a fresh access token carrying ``mfa_verified``; the refresh token
    is unchanged and later rotations keep the verified flag.
    """
    runtime = get_runtime()
    access = await runtime.auth.verify_mfa(
        principal,
        body.challenge_id,
        body.code,
        _client_ip(request),
        _user_agent(request),
        trust_device=body.trust_device,
    )
    return Envelope(
        status="ok",
        data={
            "access_token": access.token,
            "token_type": "bearer",
            "expires_at": access.expires_at,
            "mfa_verified": True,
        },
    )


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=MFAStatusResponse(**runtime.mfa.status(principal.account_id))
    )


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MFACodeRequest, request: Request, principal: AuthContext = Depends(get_verified_user)
):
    runtime = get_runtime()
    await runtime.mfa_limiter.hit(principal.account_id, _client_ip(request))
    await asyncio.to_thread(runtime.mfa.disable, principal.account_id, body.code)
    await runtime.mfa_limiter.reset(principal.account_id, _client_ip(request))
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_backup_codes(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    codes = await asyncio.to_thread(runtime.mfa.generate_backup_codes, principal.account_id)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/auth/mfa/devices", response_model=Envelope, tags=["mfa"])
async def list_trusted_devices(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    devices = runtime.mfa.list_trusted_devices(principal.account_id)
    return Envelope(
        status="ok",
        data={
            "devices": [
                TrustedDeviceResponse(
                    id=d.id,
                    device_name=d.device_name,
                    ip_addr=d.ip_addr,
                    trusted_until=d.trusted_until,
                    last_used_at=d.last_used_at,
                    created_at=d.created_at,
                )
                for d in devices
            ]
        },
    )


@router.delete("/auth/mfa/devices/{device_id}", response_model=Envelope, tags=["mfa"])
async def revoke_trusted_device(
    device_id: str, principal: AuthContext = Depends(get_verified_user)
):
    runtime = get_runtime()
    runtime.mfa.revoke_trusted_device(principal.account_id, device_id)
    return Envelope(status="ok", data={"success": True})


@router.delete("/auth/mfa/devices", response_model=Envelope, tags=["mfa"])
async def revoke_all_trusted_devices(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    count = runtime.mfa.revoke_all_trusted_devices(principal.account_id)
    return Envelope(status="ok", data={"success": True, "count": count})


# -- account / admin ----------------------------------------------------------


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_account(principal: AuthContext = Depends(get_verified_user)):
    runtime = get_runtime()
    account = runtime.auth.get_account(principal.account_id)
    return Envelope(
        status="ok",
        data=AccountResponse(
            id=account.id,
            email=account.email,
            role=account.role,
            email_verified=account.email_verified,
            mfa_enabled=account.mfa_enabled,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
            password_changed_at=account.password_changed_at,
        ),
    )


@router.get("/admin/sessions/stats", response_model=Envelope, tags=["admin"])
async def admin_session_stats(
    account_id: Optional[str] = None, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.sessions.token_stats(account_id))


@router.post("/admin/maintenance/cleanup", response_model=Envelope, tags=["admin"])
async def admin_cleanup(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    result = runtime.cleanup_expired()
    logger.info("admin_cleanup_requested", account_id=principal.account_id)
    return Envelope(status="ok", data=result)
