from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from tourpass.api.dependencies import client_ip, optional_auth, require_auth, require_role
from tourpass.api.error_handling import http_error
from tourpass.api.schemas import (
    AccountListResponse,
    AccountResponse,
    AccountRoleRequest,
    AccountStatusRequest,
    ActiveSessionsResponse,
    EmailRequest,
    EmailVerificationRequest,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    MAX_REFRESH_TOKEN_LENGTH,
    PasswordResetConfirm,
    PurgeResponse,
    RegisterRequest,
    RevokedSessionsResponse,
    SessionResponse,
    SessionStatusResponse,
    TokenRefreshRequest,
    TokenResponse,
)
from tourpass.logging import get_correlation_id, get_logger, log_security_event
from tourpass.service.auth import AuthenticatedSession, AuthFailure
from tourpass.service.gateway import Identity
from tourpass.service.refresh_tokens import REASON_DEACTIVATED
from tourpass.service.runtime import check_rate_limit, get_runtime
from tourpass.service.sessions import SessionFailure, TokenPair
from tourpass.storage.models import ADMIN_ROLES, ROLE_SUPERADMIN

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_AUTH_FAILURE_RESPONSES = {
    AuthFailure.INVALID_CREDENTIALS: ("unauthorized", "invalid email or password", 401),
    AuthFailure.ACCOUNT_SUSPENDED: ("forbidden", "account suspended", 403),
    AuthFailure.EMAIL_NOT_VERIFIED: ("forbidden", "email not verified", 403),
    AuthFailure.INVALID_OR_EXPIRED_TOKEN: ("validation_error", "invalid or expired token", 400),
}

_REFRESH_FAILURE_MESSAGES = {
    SessionFailure.INVALID_TOKEN: "invalid refresh token",
    SessionFailure.EXPIRED_OR_REVOKED: "refresh token expired or revoked",
    SessionFailure.ACCOUNT_NOT_FOUND: "invalid refresh token",
}


def _ok(data=None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


def _auth_failure(failure: AuthFailure):
    code, message, status_code = _AUTH_FAILURE_RESPONSES[failure]
    return http_error(code, message, status_code=status_code, details={"reason": failure.value})


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, _remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, retry_after))},
        )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.access_expires_in,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _session_response(session: AuthenticatedSession) -> SessionResponse:
    return SessionResponse(
        **_token_response(session.tokens).model_dump(),
        account=AccountResponse.from_account(session.account),
    )


# auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    account = await runtime.auth.register(
        body.email, body.password, body.display_name, role=body.role
    )
    return _ok(AccountResponse.from_account(account))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    # Guards against brute-forcing verification tokens
    await _enforce_rate_limit(runtime, f"verify:{ip}", limit=10, window_seconds=300)
    result = await runtime.auth.verify_email(body.token, ip)
    if isinstance(result, AuthFailure):
        raise _auth_failure(result)
    return _ok(_session_response(result))


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"email:verify:{body.email}",
        runtime.settings.email_rate_limit_per_hour,
        3600,
    )
    await runtime.auth.resend_verification(body.email)
    return _ok({"status": "sent"})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(body.email, body.password, client_ip(request))
    if isinstance(result, AuthFailure):
        raise _auth_failure(result)
    return _ok(_session_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{ip}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    result = await runtime.sessions.refresh(body.refresh_token, ip)
    if isinstance(result, SessionFailure):
        raise http_error(
            "unauthorized",
            _REFRESH_FAILURE_MESSAGES.get(result, "invalid refresh token"),
            status_code=401,
            details={"reason": result.value},
        )
    return _ok(_token_response(result.tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, body: Optional[LogoutRequest] = None):
    """Revoke the presented refresh token. Always reports success."""
    runtime = get_runtime()
    token = body.refresh_token if body else None
    if token and len(token) > MAX_REFRESH_TOKEN_LENGTH:
        logger.info("logout_noop", reason="oversized_token")
    elif token:
        try:
            outcome = await runtime.sessions.logout(token, client_ip(request))
        except Exception as exc:
            logger.error(
                "logout_revocation_failed", error_type=type(exc).__name__, error=str(exc)
            )
        else:
            if isinstance(outcome, SessionFailure):
                logger.info("logout_noop", reason=outcome.value)
    return _ok({"status": "logged_out"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"email:reset:{body.email}",
        runtime.settings.email_rate_limit_per_hour,
        3600,
    )
    await runtime.auth.forgot_password(body.email)
    # Same answer whether or not the account exists
    return _ok({"status": "sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    await _enforce_rate_limit(runtime, f"reset:confirm:{ip}", limit=5, window_seconds=300)
    result = await runtime.auth.reset_password(body.token, body.new_password, ip)
    if isinstance(result, AuthFailure):
        raise _auth_failure(result)
    return _ok({"status": "reset", "revoked_sessions": result})


# profile ------------------------------------------------------------------


@router.get("/me", response_model=Envelope, tags=["account"])
async def get_me(identity: Identity = Depends(require_auth)):
    account = get_runtime().store.get_account(identity.id)
    if not account:
        raise http_error("not_found", "account not found", status_code=404)
    return _ok(AccountResponse.from_account(account))


@router.get("/me/sessions", response_model=Envelope, tags=["account"])
async def get_my_sessions(identity: Identity = Depends(require_auth)):
    active = get_runtime().refresh_tokens.count_active(identity.id)
    return _ok(ActiveSessionsResponse(active_sessions=active))


@router.post("/me/sessions/revoke-all", response_model=Envelope, tags=["account"])
async def revoke_my_sessions(request: Request, identity: Identity = Depends(require_auth)):
    revoked = await get_runtime().sessions.revoke_all_for_account(
        identity.id, client_ip(request)
    )
    return _ok(RevokedSessionsResponse(revoked=revoked))


@router.get("/session", response_model=Envelope, tags=["account"])
async def session_status(identity: Optional[Identity] = Depends(optional_auth)):
    if identity is None:
        return _ok(SessionStatusResponse(authenticated=False))
    return _ok(
        SessionStatusResponse(
            authenticated=True,
            account=IdentityResponse(
                id=identity.id,
                email=identity.email,
                display_name=identity.display_name,
                role=identity.role,
            ),
        )
    )


# admin --------------------------------------------------------------------

require_admin = require_role(*ADMIN_ROLES)
require_superadmin = require_role(ROLE_SUPERADMIN)


@router.get("/admin/accounts", response_model=Envelope, tags=["admin"])
async def list_accounts(
    role: Optional[str] = Query(default=None, max_length=32),
    limit: int = Query(default=100, ge=1, le=500),
    _admin: Identity = Depends(require_admin),
):
    accounts = get_runtime().store.list_accounts(role=role, limit=limit)
    return _ok(AccountListResponse(items=[AccountResponse.from_account(a) for a in accounts]))


@router.patch("/admin/accounts/{account_id}/status", response_model=Envelope, tags=["admin"])
async def update_account_status(
    account_id: str,
    body: AccountStatusRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    target = runtime.store.get_account(account_id)
    if not target:
        raise http_error("not_found", "account not found", status_code=404)
    if target.id == admin.id:
        raise http_error("validation_error", "cannot change your own status", status_code=400)
    if target.role == ROLE_SUPERADMIN and admin.role != ROLE_SUPERADMIN:
        log_security_event(
            "access_denied", account_id=admin.id, role=admin.role, target_role=target.role
        )
        raise http_error("forbidden", "insufficient privileges", status_code=403)

    account = runtime.store.update_account_status(
        account_id, is_active=body.is_active, is_archived=body.is_archived
    )
    if not account:
        # Removed between the lookup and the update
        raise http_error("not_found", "account not found", status_code=404)
    revoked = 0
    if account.is_suspended:
        revoked = await runtime.sessions.revoke_all_for_account(
            account_id, client_ip(request), reason=REASON_DEACTIVATED
        )
    log_security_event(
        "account_status_changed",
        account_id=account_id,
        actor_id=admin.id,
        is_active=account.is_active,
        is_archived=account.is_archived,
        revoked=revoked,
    )
    return _ok(AccountResponse.from_account(account))


@router.post("/admin/accounts/{account_id}/role", response_model=Envelope, tags=["admin"])
async def update_account_role(
    account_id: str,
    body: AccountRoleRequest,
    superadmin: Identity = Depends(require_superadmin),
):
    runtime = get_runtime()
    if account_id == superadmin.id:
        raise http_error("validation_error", "cannot change your own role", status_code=400)
    account = runtime.store.update_account_role(account_id, body.role)
    if not account:
        raise http_error("not_found", "account not found", status_code=404)
    log_security_event(
        "account_role_changed", account_id=account_id, actor_id=superadmin.id, role=body.role
    )
    return _ok(AccountResponse.from_account(account))


@router.post(
    "/admin/accounts/{account_id}/revoke-sessions", response_model=Envelope, tags=["admin"]
)
async def revoke_account_sessions(
    account_id: str, request: Request, admin: Identity = Depends(require_admin)
):
    runtime = get_runtime()
    if not runtime.store.get_account(account_id):
        raise http_error("not_found", "account not found", status_code=404)
    revoked = await runtime.sessions.revoke_all_for_account(account_id, client_ip(request))
    logger.info("admin_revoked_sessions", account_id=account_id, actor_id=admin.id)
    return _ok(RevokedSessionsResponse(revoked=revoked))


@router.post("/admin/maintenance/purge-refresh-tokens", response_model=Envelope, tags=["admin"])
async def purge_refresh_tokens(_superadmin: Identity = Depends(require_superadmin)):
    purged = get_runtime().refresh_tokens.purge_stale()
    return _ok(PurgeResponse(purged=purged))
