"""
HTTP surface for the DevDash identity core.

Thin FastAPI layer over `AuthService`: every route delegates to the facade and
AuthError subclasses are mapped to status codes in one place.

Only sign-in, health and mode discovery are public. Every other route needs the
active session token, as a bearer header or the HttpOnly session cookie set at
sign-in, and state-changing requests from a foreign browser origin are refused.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from devdash.auth.deps import SESSION_COOKIE, authenticate_request, origin_allowed, session_cookie_kwargs
from devdash.auth.errors import (
    AuthError,
    ConfigurationError,
    ExpiredSessionError,
    NetworkError,
    SecurityError,
    ValidationError,
)
from devdash.auth.models import PendingRedirect, SecondaryLink, Session
from devdash.auth.providers import provider_metadata
from devdash.auth.service import AuthService
from devdash.auth.util import sanitize_next_path

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (SecurityError, 400),
    (ValidationError, 400),
    (ConfigurationError, 403),
    (ExpiredSessionError, 401),
    (NetworkError, 502),
)


def _status_for(e: AuthError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(e, cls):
            return status
    return 400


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


class LocalLoginRequest(BaseModel):
    email: str = ""
    password: str = ""
    remember: bool = False


class GitHubConnectRequest(BaseModel):
    token: str = ""


def _user_json(user) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "name": user.display_name,
        "role": user.role,
        "avatarUrl": user.avatar_url,
        "provider": user.provider,
        "tenantId": user.tenant_id,
        "githubUsername": user.github_username,
        "githubAvatarUrl": user.github_avatar_url,
        "githubConnected": user.github_connected,
    }


def _session_json(service: AuthService, session: Session) -> Dict[str, Any]:
    return {
        "ok": True,
        "token": session.token,
        "method": session.method.tag,
        "expiresAt": session.expires_at,
        "remember": session.storage_tier.value == "durable",
        "simulated": session.simulated,
        "user": _user_json(service.get_current_user() or session.user),
    }


def _link_json(link: Optional[SecondaryLink]) -> Dict[str, Any]:
    if link is None:
        return {"ok": True, "connected": False}
    return {
        "ok": True,
        "connected": True,
        "username": link.external_username,
        "avatarUrl": link.external_avatar_url,
        "name": link.external_name,
        "method": link.connection_method.value,
        "connectedAt": link.connected_at,
        "simulated": link.simulated,
    }


def _is_public_path(path: str) -> bool:
    if path in ("/healthz", "/api/auth/mode"):
        return True
    # Sign-in endpoints must be reachable without a session.
    if path.startswith("/api/auth/login/") or path.startswith("/api/auth/callback/"):
        return True
    return False


def _session_response(service: AuthService, session: Session) -> JSONResponse:
    resp = JSONResponse(content=_session_json(service, session))
    resp.set_cookie(**session_cookie_kwargs(service.cfg, session))
    return _no_store(resp)


def create_app(service: AuthService) -> FastAPI:
    app = FastAPI(title="DevDash identity")
    app.state.auth = service

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        status = _status_for(exc)
        if isinstance(exc, SecurityError):
            logger.warning("%s %s rejected: %s", request.method, request.url.path, str(exc))
        else:
            logger.info("%s %s failed (%s): %s", request.method, request.url.path, type(exc).__name__, str(exc))
        return _no_store(JSONResponse(status_code=status, content={"ok": False, "detail": str(exc)}))

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log requests, enforce auth on non-public paths and mark API responses uncacheable."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            path = request.url.path or ""

            if not origin_allowed(service.cfg, request):
                logger.warning(
                    "%s %s rejected: foreign origin %s", request.method, path, request.headers.get("origin")
                )
                return _no_store(JSONResponse(status_code=403, content={"ok": False, "detail": "Forbidden"}))

            # Fail closed: anything not explicitly public requires the session token.
            if request.method != "OPTIONS" and not _is_public_path(path):
                session = authenticate_request(service.current_session(), request)
                if session is None:
                    # No `WWW-Authenticate`: browsers would show a basic-auth modal.
                    return _no_store(JSONResponse(status_code=401, content={"ok": False, "detail": "Unauthorized"}))
                request.state.session = session

            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, process_time)
            if path.startswith("/api/"):
                response.headers["Cache-Control"] = "no-store"
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/api/auth/mode")
    async def auth_mode() -> Dict[str, Any]:
        """Sign-in options for the UI. Public; returns no secrets."""
        cfg = service.cfg
        return {
            "ok": True,
            "primaryScheme": cfg.primary_scheme,
            "identityMode": cfg.identity_mode,
            "credentialsEnabled": cfg.credentials_enabled,
            "providers": provider_metadata(cfg),
            "github": {
                "patEnabled": cfg.github_pat_enabled,
                "oauthEnabled": cfg.github_oauth_enabled,
            },
        }

    @app.get("/api/auth/me")
    async def auth_me() -> Dict[str, Any]:
        user = service.get_current_user()
        if user is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        session = service.current_session()
        return {
            "ok": True,
            "user": _user_json(user),
            "method": session.method.tag if session else None,
            "simulated": bool(session and session.simulated),
        }

    @app.post("/api/auth/login/local")
    async def auth_login_local(body: LocalLoginRequest) -> JSONResponse:
        try:
            session = await service.login_with_credential(body.email, body.password, body.remember)
        except ValidationError as e:
            msg = str(e)
            if msg.startswith("Too many"):
                raise HTTPException(status_code=429, detail=msg)
            if msg == "Invalid credential":
                raise HTTPException(status_code=401, detail=msg)
            raise
        return _session_response(service, session)

    @app.get("/api/auth/login/{provider}")
    async def auth_login_provider(provider: str):
        result = await service.login_with_redirect_provider(provider)
        if isinstance(result, PendingRedirect):
            return _no_store(RedirectResponse(url=result.authorization_url, status_code=302))
        return _session_response(service, result)

    @app.get("/api/auth/callback/{provider}")
    async def auth_callback(
        provider: str,
        code: str = Query(""),
        state: str = Query(""),
        next_path: str = Query("/", alias="next"),
    ):
        session = await service.handle_redirect_callback(provider, code, state)
        resp = RedirectResponse(url=sanitize_next_path(next_path), status_code=302)
        resp.set_cookie(**session_cookie_kwargs(service.cfg, session))
        return _no_store(resp)

    @app.post("/api/auth/refresh")
    async def auth_refresh() -> JSONResponse:
        await service.refresh_token()
        session = service.current_session()
        if session is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return _session_response(service, session)

    @app.post("/api/auth/logout")
    async def auth_logout() -> JSONResponse:
        await service.logout()
        resp = JSONResponse(content={"ok": True})
        resp.delete_cookie(SESSION_COOKIE, path="/")
        return _no_store(resp)

    @app.get("/api/github/status")
    async def github_status() -> Dict[str, Any]:
        return _link_json(service.secondary_link())

    @app.post("/api/github/connect")
    async def github_connect(body: GitHubConnectRequest) -> Dict[str, Any]:
        link = await service.connect_secondary_account(body.token, "token")
        return _link_json(link)

    @app.get("/api/github/login")
    async def github_login():
        url = service.begin_secondary_oauth()
        return _no_store(RedirectResponse(url=url, status_code=302))

    @app.get("/api/github/callback")
    async def github_callback(code: str = Query(""), state: str = Query("")):
        await service.connect_secondary_account(code, "oauth", state)
        return _no_store(RedirectResponse(url="/", status_code=302))

    @app.post("/api/github/disconnect")
    async def github_disconnect() -> Dict[str, Any]:
        await service.disconnect_secondary_account()
        return {"ok": True, "connected": False}

    return app


def configure_logging() -> str:
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return log_level


def run(service: AuthService, host: str = "127.0.0.1", port: int = 8080) -> None:
    import uvicorn

    log_level = configure_logging()
    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    service.initialize()
    logger.info("Starting DevDash identity server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(create_app(service), host=host, port=port, log_level=uvicorn_log_level)
