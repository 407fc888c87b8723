from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from sessionguard.api.schemas import (
    AuthResponse,
    CleanupResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PrincipalResponse,
    RememberRefreshRequest,
    RememberRevokeRequest,
    RevocationResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
)
from sessionguard.logging import get_logger
from sessionguard.service.errors import ForbiddenError, NotFoundError, TokenMalformedError
from sessionguard.service.gateway import LoginResult, Principal
from sessionguard.service.runtime import Runtime
from sessionguard.storage.models import Session, SessionContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def request_context(request: Request) -> SessionContext:
    return SessionContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Principal:
    token = runtime.gateway.extract_bearer(authorization)
    if not token:
        raise TokenMalformedError("missing bearer token")
    return await runtime.gateway.authenticate(token, request_context(request))


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role != "admin":
        raise ForbiddenError("admin access required")
    return principal


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user_id,
        role=result.role,
        session_id=result.session_id,
        session_expires_at=result.expires_at,
        access_token=result.token,
        token_type=result.token_type,
        token_expires_at=result.token_expires_at,
        remember_token=result.remember_token,
    )


def _session_response(session: Session, current_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity_at=session.last_activity_at,
        remember_me=session.remember_me,
        revoked=session.revoked,
        revoked_reason=session.revoked_reason,
        ip_addr=session.ip_addr,
        user_agent=session.user_agent,
        current=session.id == current_id,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Authenticate with identifier and password.

    Raises:
        401: invalid credentials (same response whether or not the account exists)
        403: account not yet verified
        429: rate limited, locked out, or CAPTCHA required; carries Retry-After
    """
    result = await runtime.gateway.login(
        body.identifier,
        body.password,
        request_context(request),
        remember_me=body.remember_me,
        captcha_token=body.captcha_token,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RememberRefreshRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Trade a remember token for a new session, token and remember token."""
    result = await runtime.gateway.refresh_from_remember_token(
        body.remember_token, request_context(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    body = body or LogoutRequest()
    revoked = await runtime.gateway.logout(
        principal, everywhere=body.everywhere, remember_token=body.remember_token
    )
    return Envelope(status="ok", data=RevocationResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            role=principal.role,
            session_id=principal.session_id,
            flagged=principal.flagged,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.sessions.list_user_sessions(principal.user_id)
    items = [_session_response(s, principal.session_id) for s in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Log out every other device, keeping the caller's session."""
    revoked = await runtime.sessions.destroy_all_for_user(
        principal.user_id, except_session_id=principal.session_id
    )
    return Envelope(status="ok", data=RevocationResponse(revoked=revoked))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    owned = await runtime.sessions.list_user_sessions(principal.user_id)
    if not any(s.id == session_id for s in owned):
        # Same answer for foreign and unknown ids
        raise NotFoundError("session not found")
    revoked = await runtime.sessions.destroy_session(session_id, "user_revoked")
    return Envelope(status="ok", data=RevocationResponse(revoked=int(revoked)))


@router.post("/auth/sessions/refresh", response_model=Envelope, tags=["sessions"])
async def refresh_current_session(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Extend the caller's session by its TTL and return a fresh access token."""
    result = await runtime.gateway.extend_session(principal)
    return Envelope(status="ok", data=_auth_response(result))


@router.delete("/auth/remember", response_model=Envelope, tags=["auth"])
async def revoke_remember(
    body: Optional[RememberRevokeRequest] = None,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Disable "remember me" for one presented token, or for every device."""
    body = body or RememberRevokeRequest()
    revoked = await runtime.gateway.revoke_remember(principal, body.remember_token)
    return Envelope(status="ok", data=RevocationResponse(revoked=revoked))


@router.get("/admin/sessions/stats", response_model=Envelope, tags=["admin"])
async def session_stats(
    user_id: Optional[str] = Query(None),
    identifier: Optional[str] = Query(None, max_length=320),
    ip: Optional[str] = Query(None, max_length=64),
    principal: Principal = Depends(get_admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    target = user_id or principal.user_id
    sessions = await runtime.sessions.get_user_stats(target)
    login = await runtime.guard.get_stats(identifier, ip) if identifier else None
    return Envelope(
        status="ok",
        data=SessionStatsResponse(user_id=target, sessions=sessions, login=login),
    )


@router.post("/admin/sessions/cleanup", response_model=Envelope, tags=["admin"])
async def cleanup_sessions(
    principal: Principal = Depends(get_admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    report = await runtime.cleanup()
    logger.info("admin_cleanup", user_id=principal.user_id, **report)
    return Envelope(status="ok", data=CleanupResponse(**report))
