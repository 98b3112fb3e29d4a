from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from taskguard.api.schemas import (
    AccountResponse,
    AuthResponse,
    BackupCodesResponse,
    EmailVerificationRequest,
    Envelope,
    LoginActivityResponse,
    LoginRequest,
    LogoutRequest,
    OAuthCallbackRequest,
    OAuthStartRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    ResendVerificationRequest,
    SessionResponse,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UnlinkProviderRequest,
)
from taskguard.logging import get_logger
from taskguard.service.errors import AuthenticationError, NotFoundError
from taskguard.service.login import LoginResult
from taskguard.service.runtime import get_runtime
from taskguard.service.sessions import ClientMeta
from taskguard.service.tokens import TokenType
from taskguard.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class AuthContext:
    account_id: str
    session_id: str
    tenant_id: str


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token to a live session."""
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    claims = runtime.tokens.verify(token, TokenType.ACCESS)
    if not await runtime.sessions.is_active(claims.session_id, claims.account_id):
        raise AuthenticationError("session has ended, login again")
    account = runtime.store.get_account(claims.account_id)
    if not account or not account.is_active:
        raise AuthenticationError("session has ended, login again")
    return AuthContext(
        account_id=claims.account_id,
        session_id=claims.session_id,
        tenant_id=claims.tenant_id,
    )


def _client_meta(request: Request, device_name: Optional[str] = None) -> ClientMeta:
    return ClientMeta(
        ip_addr=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        device_name=device_name,
    )


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        account_id=result.account.id,
        state=result.state.value,
        requires_2fa=result.requires_2fa,
        temp_auth_token=result.temp_auth_token,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type="bearer" if result.access_token else None,
        session_id=result.session_id,
        expires_in=result.expires_in,
        backup_code_used=result.backup_code_used,
        backup_codes_remaining=result.backup_codes_remaining,
        account_created=result.account_created,
        provider_linked=result.provider_linked,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        tenant_id=account.tenant_id,
        name=account.name,
        avatar_url=account.avatar_url,
        is_email_verified=account.is_email_verified,
        two_factor_enabled=account.two_factor_enabled,
        linked_providers=sorted(account.linked_providers),
        has_password=bool(account.password_hash),
        last_login_at=account.last_login_at,
        created_at=account.created_at,
    )


# registration and recovery
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified password account and send the verification email."""
    runtime = get_runtime()
    account = await runtime.accounts.register(
        body.email,
        body.password,
        name=body.name,
        terms_accepted=body.terms_accepted,
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    account = await runtime.accounts.verify_email(body.token)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await runtime.accounts.resend_verification(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the account exists and is unverified, a new link was sent"},
    )


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.accounts.request_password_reset(body.email)
    return Envelope(
        status="ok", data={"message": "if the account exists, a reset link was sent"}
    )


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.accounts.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.accounts.change_password(
        principal.account_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"message": "password updated"})


# login
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    x_device_name: Optional[str] = Header(None, alias="X-Device-Name"),
):
    """Password login.

    Returns either a full token bundle or, for accounts with two-factor
    authentication, ``requires_2fa`` with a short-lived ``temp_auth_token``.
    """
    runtime = get_runtime()
    result = await runtime.login.login(
        body.email,
        body.password,
        body.remember_me,
        _client_meta(request, x_device_name),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/2fa/login", response_model=Envelope, tags=["auth"])
async def verify_two_factor_login(
    body: TwoFactorLoginRequest,
    request: Request,
    x_device_name: Optional[str] = Header(None, alias="X-Device-Name"),
):
    runtime = get_runtime()
    result = await runtime.login.verify_two_factor_login(
        body.temp_auth_token,
        body.code,
        body.remember_me,
        _client_meta(request, x_device_name),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.login.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    if body.all_sessions:
        count = await runtime.login.logout_all(
            principal.account_id, refresh_token=body.refresh_token
        )
        return Envelope(status="ok", data={"sessions_ended": count})
    await runtime.login.logout(
        principal.account_id, principal.session_id, body.refresh_token
    )
    return Envelope(status="ok", data={"sessions_ended": 1})


# account and sessions
@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise NotFoundError("account not found")
    return Envelope(status="ok", data=_account_response(account))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = [
        SessionResponse(
            id=s.id,
            device_type=s.device_type,
            device_name=s.device_name,
            ip_addr=s.ip_addr,
            user_agent=s.user_agent,
            auth_method=s.auth_method,
            created_at=s.created_at,
            last_seen_at=s.last_seen_at,
            expires_at=s.expires_at,
            current=s.id == principal.session_id,
        )
        for s in runtime.sessions.list_active(principal.account_id)
    ]
    return Envelope(status="ok", data={"sessions": sessions})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def end_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.sessions.end(principal.account_id, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "ended": True})


@router.get("/auth/activity", response_model=Envelope, tags=["auth"])
async def login_activity(
    limit: int = Query(30, ge=1, le=100),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    entries = [
        LoginActivityResponse(
            id=a.id,
            status=a.status,
            auth_method=a.auth_method,
            two_factor_used=a.two_factor_used,
            failure_reason=a.failure_reason,
            ip_address=a.ip_address,
            user_agent=a.user_agent,
            device_type=a.device_type,
            created_at=a.created_at,
        )
        for a in runtime.audit.recent(principal.account_id, limit=limit)
    ]
    return Envelope(status="ok", data={"activity": entries})


# two-factor management
@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.two_factor.status(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled, backup_codes_remaining=status.backup_codes_remaining
        ),
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    setup = await runtime.two_factor.generate_setup_data(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret, provisioning_uri=setup.provisioning_uri
        ),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    codes = await runtime.two_factor.verify_and_enable(principal.account_id, body.code)
    runtime.audit.record_event("two_factor_enabled", account_id=principal.account_id)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.two_factor.disable(principal.account_id, body.password, body.code)
    runtime.audit.record_event("two_factor_disabled", account_id=principal.account_id)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/backup-codes/regenerate", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    codes = await runtime.two_factor.regenerate_backup_codes(principal.account_id)
    runtime.audit.record_event(
        "backup_codes_regenerated", account_id=principal.account_id
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# OAuth
@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["oauth"])
async def oauth_start(
    body: OAuthStartRequest,
    provider: str = Path(..., max_length=32),
):
    """Return the provider authorization URL with a fresh single-use state."""
    runtime = get_runtime()
    start = await runtime.oauth.start(provider, body.redirect_uri)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.post("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    body: OAuthCallbackRequest,
    request: Request,
    provider: str = Path(..., max_length=32),
    x_device_name: Optional[str] = Header(None, alias="X-Device-Name"),
):
    runtime = get_runtime()
    result = await runtime.login.oauth_complete(
        provider,
        body.code,
        body.state,
        body.remember_me,
        _client_meta(request, x_device_name),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/oauth/{provider}/unlink", response_model=Envelope, tags=["oauth"])
async def unlink_provider(
    body: UnlinkProviderRequest,
    provider: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.oauth.unlink_provider(principal.account_id, provider, body.password)
    return Envelope(status="ok", data={"provider": provider, "linked": False})
