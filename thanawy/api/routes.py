from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from thanawy.api.error_handling import error_body
from thanawy.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    DisableTwoFactorRequest,
    LoginRequest,
    LogoutRequest,
    RecoveryCodesRequest,
    RecoveryCodesResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SecurityLogOut,
    SecurityLogsResponse,
    SessionOut,
    SessionsResponse,
    SessionStatistics,
    TOTPSetupResponse,
    TwoFactorChallengeResponse,
    UserOut,
    VerifyCodeRequest,
    VerifyLoginRequest,
    VerifyLoginResponse,
)
from thanawy.logging import get_logger
from thanawy.service.auth import AuthContext, LoginResult
from thanawy.service.errors import BadRequestError, ValidationError
from thanawy.service.oauth import OAuthError, safe_redirect_path
from thanawy.service.runtime import check_rate_limit, get_runtime
from thanawy.service.security_log import SecurityEventType
from thanawy.service.tokens import TokenPair, extract_bearer
from thanawy.storage.common import client_ip
from thanawy.storage.models import utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_REDIRECT_COOKIE = "oauth_redirect"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | list] = None
) -> HTTPException:
    payload: dict[str, object] = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return HTTPException(status_code=status_code, detail=payload)


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    """(ip, user agent) of the caller; X-Forwarded-For counts only behind TRUSTED_PROXIES."""
    ip = client_ip(
        request.client.host if request.client else None,
        request.headers.get("x-forwarded-for"),
        get_runtime().settings.trusted_proxies,
    )
    return ip, request.headers.get("user-agent")


def _rate_key(prefix: str, ip: Optional[str]) -> str:
    return f"{prefix}:{ip or 'unknown'}"


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise HTTPException(
            status_code=429,
            detail={"error": "too many requests, try again later", "code": "rate_limited"},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


# cookies
def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    runtime = get_runtime()
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
        path="/",
    )


def _clear_cookie(response: Response, name: str) -> None:
    _set_cookie(response, name, "", 0)


def _apply_auth_cookies(response: Response, tokens: TokenPair) -> None:
    now = utcnow()
    _set_cookie(
        response,
        ACCESS_COOKIE,
        tokens.access_token,
        max(0, int((tokens.access_expires_at - now).total_seconds())),
    )
    _set_cookie(
        response,
        REFRESH_COOKIE,
        tokens.refresh_token,
        max(0, int((tokens.refresh_expires_at - now).total_seconds())),
    )


def _clear_auth_cookies(response: Response) -> None:
    _clear_cookie(response, ACCESS_COOKIE)
    _clear_cookie(response, REFRESH_COOKIE)


def _presented_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    return extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)


async def get_current_session(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(_presented_token(request, authorization))
    if not ctx:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return ctx


def _auth_payload(result: LoginResult, message: str, *, model=AuthResponse) -> dict:
    return model(
        message=message,
        token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        session_id=result.session.id,
        user=UserOut.from_user(result.user),
    ).dump()


# password sign-in
@router.post("/register", status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in."""
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        _rate_key("register", ip),
        runtime.settings.login_rate_limit_per_minute,
    )
    result = runtime.auth.register(
        body.email, body.password, body.name, user_agent=user_agent, ip=ip
    )
    _apply_auth_cookies(response, result.tokens)
    return _auth_payload(result, "account created")


@router.post("/login")
async def login(body: LoginRequest, request: Request, response: Response):
    """Password sign-in.

    Accounts with two-factor enabled get a pending login attempt instead of
    tokens; finish it at ``/auth/two-factor/totp/verify-login``.
    """
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        _rate_key("login", ip),
        runtime.settings.login_client_rate_limit_per_minute,
    )
    # Keyed on the account so rotating addresses or agents shares one bucket
    await _enforce_rate_limit(
        runtime,
        f"login:account:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        user_agent=user_agent,
        ip=ip,
    )
    if result.requires_two_factor:
        challenge = result.challenge
        return TwoFactorChallengeResponse(
            login_attempt_id=challenge.id,
            expires_at=challenge.expires_at,
            methods=list(challenge.methods),
        ).dump()
    _apply_auth_cookies(response, result.tokens)
    return _auth_payload(result, "signed in")


@router.post("/refresh")
async def refresh(request: Request, body: Optional[RefreshRequest] = None):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        failure = JSONResponse(
            status_code=400, content=error_body(400, "refresh token required")
        )
        _clear_cookie(failure, REFRESH_COOKIE)
        return failure
    rotated = await runtime.auth.refresh(token)
    if not rotated:
        failure = JSONResponse(
            status_code=401, content=error_body(401, "invalid or expired refresh token")
        )
        _clear_cookie(failure, REFRESH_COOKIE)
        return failure
    _claims, tokens = rotated
    payload = RefreshResponse(
        message="tokens refreshed",
        token=tokens.access_token,
        refresh_token=tokens.refresh_token,
    ).dump()
    success = JSONResponse(content=payload)
    _apply_auth_cookies(success, tokens)
    return success


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Always succeeds; revokes the caller's session (or all of them) when the token is good."""
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    all_devices = bool(body and body.logout_all_devices)
    runtime.auth.logout(
        _presented_token(request, authorization),
        all_devices=all_devices,
        ip=ip,
        user_agent=user_agent,
    )
    _clear_auth_cookies(response)
    message = "signed out of all devices" if all_devices else "signed out"
    return {"message": message}


@router.get("/me")
async def me(principal: AuthContext = Depends(get_current_session)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return {"user": UserOut.from_user(user).dump(), "sessionId": principal.session_id}


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AuthContext = Depends(get_current_session),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    revoked = runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        session_id=principal.session_id,
        ip=ip,
        user_agent=user_agent,
    )
    return {"message": "password changed", "revokedSessions": revoked}


# sessions
@router.get("/sessions")
async def list_sessions(principal: AuthContext = Depends(get_current_session)):
    runtime = get_runtime()
    registry = runtime.auth.sessions
    views = registry.list(principal.user_id, principal.session_id)
    return SessionsResponse(
        sessions=[SessionOut.from_view(view) for view in views],
        statistics=SessionStatistics(**registry.statistics(principal.user_id)),
    ).dump()


@router.delete("/sessions")
async def revoke_other_sessions(
    request: Request, principal: AuthContext = Depends(get_current_session)
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    revoked = runtime.auth.sessions.revoke_all(
        principal.user_id, except_session_id=principal.session_id
    )
    runtime.auth.security_log.log(
        principal.user_id,
        SecurityEventType.LOGOUT_ALL,
        ip=ip,
        user_agent=user_agent,
        metadata={"revoked": revoked, "kept_session_id": principal.session_id},
    )
    return {"message": "other sessions signed out", "revokedCount": revoked}


@router.delete("/sessions/{session_id}")
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_session),
):
    runtime = get_runtime()
    runtime.auth.sessions.revoke_for_user(principal.user_id, session_id)
    return {"message": "session revoked"}


# two-factor
@router.post("/two-factor/totp/setup")
async def totp_setup(principal: AuthContext = Depends(get_current_session)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    setup = runtime.auth.two_factor.setup(user)
    return TOTPSetupResponse(
        secret=setup.secret,
        qr_code_url=setup.qr_code_url,
        manual_entry_key=setup.manual_entry_key,
        recovery_codes=setup.recovery_codes,
    ).dump()


@router.post("/two-factor/totp/verify")
async def totp_verify(
    body: VerifyCodeRequest, principal: AuthContext = Depends(get_current_session)
):
    runtime = get_runtime()
    runtime.auth.two_factor.verify_and_enable(principal.user_id, body.code)
    return {"message": "two-factor authentication enabled", "enabled": True}


@router.post("/two-factor/totp/verify-login")
async def totp_verify_login(body: VerifyLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        _rate_key("verify-login", ip),
        runtime.settings.mfa_rate_limit_per_minute,
    )
    result = await runtime.auth.complete_two_factor_login(
        body.login_attempt_id,
        body.code,
        use_recovery_code=body.use_recovery_code,
        user_id=body.user_id,
        user_agent=user_agent,
        ip=ip,
    )
    _apply_auth_cookies(response, result.tokens)
    return _auth_payload(result, "signed in", model=VerifyLoginResponse)


@router.post("/two-factor/totp/disable")
async def totp_disable(
    body: DisableTwoFactorRequest, principal: AuthContext = Depends(get_current_session)
):
    runtime = get_runtime()
    await runtime.auth.two_factor.disable(principal.user_id, body.code)
    return {"message": "two-factor authentication disabled", "enabled": False}


@router.get("/two-factor/recovery-codes")
async def recovery_codes_count(principal: AuthContext = Depends(get_current_session)):
    runtime = get_runtime()
    return {"count": runtime.auth.two_factor.count_recovery_codes(principal.user_id)}


@router.post("/two-factor/recovery-codes")
async def regenerate_recovery_codes(
    body: Optional[RecoveryCodesRequest] = None,
    principal: AuthContext = Depends(get_current_session),
):
    runtime = get_runtime()
    two_factor = runtime.auth.two_factor
    if not two_factor.is_enabled(principal.user_id):
        raise BadRequestError("two-factor authentication is not enabled")
    codes = two_factor.generate_recovery_codes(
        principal.user_id, body.count if body else None
    )
    return RecoveryCodesResponse(
        codes=codes,
        message="new recovery codes generated",
        warning="Store these codes somewhere safe. They will not be shown again and the previous codes no longer work.",
    ).dump()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# audit trail
@router.get("/security-logs")
async def security_logs(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    event_type: Optional[str] = Query(None, alias="eventType", max_length=64),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(get_current_session),
):
    runtime = get_runtime()
    if event_type and event_type not in SecurityEventType.__members__:
        raise ValidationError("unknown event type", detail={"field": "eventType"})
    entries, total = runtime.auth.security_log.list(
        principal.user_id,
        event_type=event_type,
        since=_as_utc(since),
        until=_as_utc(until),
        limit=limit,
        offset=offset,
    )
    return SecurityLogsResponse(
        logs=[SecurityLogOut.from_entry(entry) for entry in entries], total=total
    ).dump()


# OAuth; registered last so the catch-all path does not shadow the routes above
def _login_error_redirect(error: OAuthError) -> RedirectResponse:
    runtime = get_runtime()
    url = (
        f"{runtime.settings.app_base_url}/login?error={quote(error.code)}"
        f"&message={quote(error.message)}"
    )
    redirect = RedirectResponse(url, status_code=302)
    _clear_cookie(redirect, OAUTH_STATE_COOKIE)
    _clear_cookie(redirect, OAUTH_REDIRECT_COOKIE)
    return redirect


@router.get("/{provider}")
async def oauth_initiate(
    provider: str = Path(..., max_length=32),
    redirect: Optional[str] = Query(None, max_length=2048),
):
    runtime = get_runtime()
    try:
        start = runtime.oauth.initiate(provider, redirect)
    except OAuthError as exc:
        return _login_error_redirect(exc)
    response = RedirectResponse(start.authorization_url, status_code=302)
    ttl = runtime.settings.oauth_state_ttl_seconds
    _set_cookie(response, OAUTH_STATE_COOKIE, start.state, ttl)
    if start.redirect_path:
        _set_cookie(response, OAUTH_REDIRECT_COOKIE, start.redirect_path, ttl)
    return response


@router.get("/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=128),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    try:
        result = await runtime.oauth.callback(
            provider,
            code=code,
            state=state,
            stored_state=request.cookies.get(OAUTH_STATE_COOKIE),
            error=error,
            user_agent=user_agent,
            ip=ip,
        )
    except OAuthError as exc:
        return _login_error_redirect(exc)
    target = safe_redirect_path(request.cookies.get(OAUTH_REDIRECT_COOKIE))
    if result.requires_two_factor:
        # No session yet: the app collects the code and calls verify-login
        params = {"loginAttemptId": result.challenge.id}
        if target:
            params["redirect"] = target
        response = RedirectResponse(
            f"{runtime.settings.app_base_url}/two-factor?{urlencode(params)}", status_code=302
        )
    else:
        response = RedirectResponse(
            f"{runtime.settings.app_base_url}{target or '/'}", status_code=302
        )
        _apply_auth_cookies(response, result.tokens)
    _clear_cookie(response, OAUTH_STATE_COOKIE)
    _clear_cookie(response, OAUTH_REDIRECT_COOKIE)
    return response


__all__ = ["router", "get_current_session"]
