from __future__ import annotations

from typing import Iterable, Optional

from fastapi import APIRouter, Body, Depends, Header, Request, Response

from warden.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    PrincipalResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
)
from warden.service.auth import AuthenticatedSession
from warden.service.authz import ADMIN, MANAGER
from warden.service.runtime import get_runtime
from warden.service.tokens import TokenClaims, extract_bearer

router = APIRouter(prefix="/v1")


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    result = await runtime.auth.authenticate_bearer(authorization)
    return result.unwrap()


def require_roles(*roles: str):
    """Dependency factory: authenticate, then check the cached role decision."""

    async def _dependency(principal: TokenClaims = Depends(get_principal)) -> TokenClaims:
        runtime = get_runtime()
        result = await runtime.auth.authorize(principal, roles)
        result.unwrap()
        return principal

    return _dependency


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _refresh_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.refresh_cookie_name)


def _apply_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _auth_response(authenticated: AuthenticatedSession) -> AuthResponse:
    return AuthResponse(
        user_id=authenticated.user.id,
        session_id=authenticated.session.session_id,
        session_expires_at=authenticated.session.expires_at,
        access_token=authenticated.tokens.access_token,
        token_type=authenticated.tokens.token_type,
        expires_in=authenticated.tokens.expires_in,
        role=authenticated.user.role,
    )


def _session_items(sessions: Iterable) -> SessionListResponse:
    return SessionListResponse(
        items=[
            SessionResponse(
                session_id=s.session_id, created_at=s.created_at, expires_at=s.expires_at
            )
            for s in sessions
        ]
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    The refresh token is only delivered as an HttpOnly cookie scoped to the
    auth routes.

    Raises:
        401: If credentials are invalid or the account is inactive
        429: If the account or client IP exhausted its login quota
        503: If the session store is unreachable
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, client_ip=_client_ip(request)
    )
    authenticated = result.unwrap()
    _apply_refresh_cookie(response, authenticated.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_response(authenticated))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(None),
):
    """Rotate a refresh token; the presented token cannot be used again."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or _refresh_cookie(request)
    result = await runtime.auth.refresh(token)
    authenticated = result.unwrap()
    _apply_refresh_cookie(response, authenticated.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_response(authenticated))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or _refresh_cookie(request)
    bearer = extract_bearer(authorization)
    access_token = bearer.value if bearer.ok else None
    await runtime.auth.logout(token, access_token)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response, principal: TokenClaims = Depends(get_principal)
):
    runtime = get_runtime()
    revoked = (await runtime.auth.logout_all(principal)).unwrap()
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: TokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    sessions = (await runtime.auth.sessions(principal)).unwrap()
    return Envelope(status="ok", data=_session_items(sessions))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: TokenClaims = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.sub,
            email=principal.email,
            role=principal.role,
            issued_at=principal.iat,
            expires_at=principal.exp,
        ),
    )


@router.get("/admin/overview", response_model=Envelope, tags=["admin"])
async def admin_overview(principal: TokenClaims = Depends(require_roles(ADMIN, MANAGER))):
    runtime = get_runtime()
    sessions = (await runtime.auth.sessions(principal)).unwrap()
    return Envelope(
        status="ok",
        data={"role": principal.role, "active_sessions": len(sessions)},
    )
