from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request

from authledger.api.schemas import (
    AcceptedResponse,
    AuthResponse,
    EmailVerificationConfirm,
    Envelope,
    LoginEventResponse,
    LoginHistoryResponse,
    LoginRequest,
    LogoutAllRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PrincipalResponse,
    RegisterRequest,
    RevocationResponse,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from authledger.config import Role
from authledger.logging import get_logger
from authledger.service.auth import AuthContext, AuthResult
from authledger.service.runtime import Runtime, get_runtime
from authledger.storage.models import SessionContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _resolve_role(runtime: Runtime, role: str) -> Role:
    try:
        return runtime.settings.resolve_role(role)
    except ValueError as exc:
        raise _http_error("not_found", str(exc), status_code=404) from exc


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _http_error(
            "unauthorized",
            "missing bearer token",
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error(
            "unauthorized",
            "malformed authorization header",
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


def _client_context(request: Request, device: Optional[str] = None) -> SessionContext:
    return SessionContext(
        user_agent=request.headers.get("user-agent"),
        ip_addr=request.client.host if request.client else None,
        device=device,
    )


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    decision = await runtime.rate_limiter.check(key, limit, window_seconds)
    if not decision.allowed:
        logger.warning("rate_limited", key_kind=key.split(":", 1)[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "too many requests",
            status_code=429,
            details={"retry_after_seconds": decision.reset_seconds},
            headers={"Retry-After": str(max(1, decision.reset_seconds))},
        )


async def get_principal_context(
    role: str,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    return await runtime.auth.authenticate(_bearer_token(authorization), role=parsed)


async def get_admin_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(_bearer_token(authorization))
    if ctx.role != Role.ADMINISTRATOR.value:
        raise _http_error("forbidden", "administrator access required", status_code=403)
    return ctx


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        principal=PrincipalResponse.from_principal(result.principal),
        tokens=TokenPairResponse(**result.tokens.as_dict()),
    )


@router.post("/auth/{role}/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    role: str, body: RegisterRequest, request: Request, background_tasks: BackgroundTasks
):
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    result = await runtime.auth.register(
        parsed,
        body.email,
        body.password,
        profile=body.profile,
        context=_client_context(request, body.device),
        defer=background_tasks.add_task,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/{role}/login", response_model=Envelope, tags=["auth"])
async def login(role: str, body: LoginRequest, request: Request):
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    client_ip = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime,
        f"login:{parsed.value}:{client_ip}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        parsed, body.email, body.password, context=_client_context(request, body.device)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/{role}/refresh", response_model=Envelope, tags=["auth"])
async def refresh(role: str, body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token; a spent token replayed here reports reuse."""
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    result = await runtime.auth.refresh(
        body.refresh_token, role=parsed, context=_client_context(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/{role}/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    role: str, body: PasswordResetRequest, background_tasks: BackgroundTasks
):
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    await runtime.auth.request_password_reset(
        parsed, body.email, defer=background_tasks.add_task
    )
    return Envelope(status="ok", data=AcceptedResponse())


@router.post("/auth/{role}/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(role: str, body: PasswordResetConfirm):
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    revoked = await runtime.auth.confirm_password_reset(
        body.token, body.new_password, role=parsed
    )
    return Envelope(status="ok", data=RevocationResponse(revoked=revoked))


@router.post("/auth/{role}/email/verify/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(role: str, body: EmailVerificationConfirm):
    runtime = get_runtime()
    parsed = _resolve_role(runtime, role)
    principal = await runtime.auth.confirm_email_verification(body.token, role=parsed)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/{role}/email/verify/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    background_tasks: BackgroundTasks,
    ctx: AuthContext = Depends(get_principal_context),
):
    runtime = get_runtime()
    sent = await runtime.auth.request_email_verification(
        ctx.principal_id, defer=background_tasks.add_task
    )
    return Envelope(status="ok", data={"sent": sent})


@router.post("/auth/{role}/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    ctx: AuthContext = Depends(get_principal_context),
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        ctx.principal_id,
        body.current_password,
        body.new_password,
        keep_session_id=ctx.session_id,
    )
    return Envelope(status="ok", data=RevocationResponse(revoked=revoked))


@router.post("/auth/{role}/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(get_principal_context),
):
    runtime = get_runtime()
    target = (body.session_id if body else None) or ctx.session_id
    revoked = await runtime.auth.logout(target, principal_id=ctx.principal_id)
    return Envelope(status="ok", data=RevocationResponse(revoked=int(revoked)))


@router.post("/auth/{role}/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    body: Optional[LogoutAllRequest] = None,
    ctx: AuthContext = Depends(get_principal_context),
):
    runtime = get_runtime()
    keep = ctx.session_id if body is not None and body.keep_current else None
    revoked = await runtime.auth.logout_all(ctx.principal_id, except_session_id=keep)
    return Envelope(status="ok", data=RevocationResponse(revoked=revoked))


@router.get("/auth/{role}/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_principal_context)):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(ctx.principal))


@router.get("/auth/{role}/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(ctx: AuthContext = Depends(get_principal_context)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(ctx.principal_id)
    items = [SessionResponse.from_session(s, current_id=ctx.session_id) for s in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.get("/auth/{role}/login-history", response_model=Envelope, tags=["auth"])
async def login_history(
    limit: int = Query(50, ge=1, le=500),
    ctx: AuthContext = Depends(get_principal_context),
):
    runtime = get_runtime()
    events = await runtime.auth.login_history(ctx.principal_id, limit)
    items = [LoginEventResponse.from_event(event) for event in events]
    return Envelope(status="ok", data=LoginHistoryResponse(items=items))


@router.get("/admin/principals/{principal_id}", response_model=Envelope, tags=["admin"])
async def admin_get_principal(
    principal_id: str, ctx: AuthContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    principal = await runtime.auth.get_principal(principal_id)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.delete("/admin/principals/{principal_id}", response_model=Envelope, tags=["admin"])
async def admin_erase_principal(
    principal_id: str, ctx: AuthContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    if principal_id == ctx.principal_id:
        raise _http_error("validation_error", "cannot erase your own account", status_code=400)
    revoked = await runtime.auth.erase_principal(principal_id)
    logger.info("admin_principal_erased", admin_id=ctx.principal_id, principal_id=principal_id)
    return Envelope(status="ok", data={"erased": True, "sessions_revoked": revoked})


