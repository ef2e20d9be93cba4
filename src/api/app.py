"""Entra Graph Samples — FastAPI application.

Provides:
  - GET /health  — liveness probe (is the process alive?)
  - GET /ready   — readiness probe (can a Graph token be obtained?)
  - GET /version — build info (git SHA, build time)
  - GET /auth/login    — initiate OAuth2 authorization code flow (optionally with claims)
  - GET /auth/callback — handle Entra ID redirect with auth code
  - GET /auth/me       — return current user identity (protected)
  - GET /graph/me, /graph/me/photo, /graph/me/groups, /graph/users, /graph/groups,
        /graph/users/search, /graph/users/{id}
        — Microsoft Graph reads on behalf of the caller (protected)
  - GET /graph/me/fido2-methods, GET|DELETE /graph/users/{id}/fido2-methods[/{method}]
        — FIDO2 security key management (protected)
  - GET /api/fileshare/download — first file matching a regex, zipped
  - GET /api/fileshare/ping     — file share API liveness
"""

from __future__ import annotations

import os
import secrets
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from kiota_abstractions.api_error import APIError
from pydantic import BaseModel

from src.core.config import settings
from src.graph.cae import CaeCallWrapper, GraphOutcome, error_message
from src.graph.client import GRAPH_DEFAULT_SCOPE, create_credential, create_graph_client
from src.graph.directory import DirectoryAccessDeniedError, DirectoryService
from src.graph.paging import PagingCancelledError
from src.middleware.auth import (
    UserContext,
    build_auth_url,
    exchange_code_for_tokens,
    get_current_user,
    require_api_access,
)
from src.middleware.consent import ConsentHandler
from src.middleware.logging_config import setup_logging
from src.middleware.tracing import setup_tracing
from src.storage.file_share import FileShareError, download_matching_file_as_zip

logger = structlog.get_logger(__name__)

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logging(settings.log_level, json_format=settings.is_production)
    setup_tracing()
    logger.info("app.starting", environment=settings.environment)
    yield


app = FastAPI(
    title="Entra Graph Samples",
    description="Entra ID sign-in, Microsoft Graph paging with CAE handling, and Azure Files download",
    version=APP_VERSION,
    lifespan=lifespan,
)


# ── Response Models ────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    timestamp: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]
    timestamp: str


class VersionResponse(BaseModel):
    version: str
    git_sha: str
    build_time: str
    environment: str


class AuthMeResponse(BaseModel):
    user_id: str
    email: str
    name: str
    tenant_id: str
    scopes: list[str]


# ── Health Probes ──────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe — returns 200 if the process is alive."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/ready", response_model=ReadinessResponse)
async def readiness_check() -> ReadinessResponse:
    """Readiness probe — reports whether Graph credentials are usable."""
    checks = {"graph_api": await _check_graph_api()}

    failed = {k: v for k, v in checks.items() if v not in ("ok", "skipped")}
    if failed:
        logger.warning("readiness.not_ready", failed_checks=failed)

    return ReadinessResponse(
        status="not_ready" if failed else "ready",
        checks=checks,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


async def _check_graph_api() -> str:
    """Verify the app identity can obtain a Graph token."""
    if not settings.azure_tenant_id or not settings.azure_client_id:
        return "skipped"

    try:
        credential = create_credential()
        async with credential:
            token = await credential.get_token(GRAPH_DEFAULT_SCOPE)
        return "ok" if token and token.token else "no_token"
    except Exception as e:
        logger.error("readiness.graph_api.error", error=str(e))
        return f"error: {type(e).__name__}"


@app.get("/version", response_model=VersionResponse)
async def version_info() -> VersionResponse:
    """Return build information for diagnostics."""
    return VersionResponse(
        version=APP_VERSION,
        git_sha=os.environ.get("GIT_SHA", "unknown"),
        build_time=os.environ.get("BUILD_TIME", "unknown"),
        environment=settings.environment,
    )


# ── Auth Endpoints ─────────────────────────────────────────────────────────


@app.get("/auth/login")
async def auth_login(request: Request, claims: str | None = None) -> RedirectResponse:
    """Initiate OAuth2 authorization code flow.

    A ``claims`` query parameter (from a CAE challenge) is forwarded to
    Entra ID so the new token satisfies it.
    """
    redirect_uri = str(request.url_for("auth_callback"))
    state = secrets.token_urlsafe(32)
    auth_url = build_auth_url(redirect_uri=redirect_uri, state=state, claims=claims)
    return RedirectResponse(url=auth_url)


@app.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    state: str | None = None,
) -> dict[str, str]:
    """Handle the Entra ID OAuth2 callback and return the issued access token."""
    if error:
        logger.warning("auth.callback.error", error=error, error_description=error_description)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Authentication failed: {error_description or error}",
        )

    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code",
        )

    redirect_uri = str(request.url_for("auth_callback"))
    token_response = await exchange_code_for_tokens(code=code, redirect_uri=redirect_uri)

    return {
        "access_token": token_response.get("access_token", ""),
        "token_type": "Bearer",
        "expires_in": str(token_response.get("expires_in", "")),
        "scope": token_response.get("scope", ""),
    }


@app.get("/auth/me", response_model=AuthMeResponse)
async def auth_me(user: UserContext = Depends(get_current_user)) -> AuthMeResponse:
    """Return the authenticated user's identity from the bearer token."""
    return AuthMeResponse(
        user_id=user.user_id,
        email=user.email,
        name=user.name,
        tenant_id=user.tenant_id,
        scopes=user.scopes,
    )


# ── Graph Endpoints ────────────────────────────────────────────────────────


@dataclass
class GraphSession:
    """Per-request Graph access: directory service plus its consent handler."""

    directory: DirectoryService
    consent: ConsentHandler


async def get_graph_session(
    request: Request,
    user: UserContext = Depends(require_api_access),
) -> AsyncIterator[GraphSession]:
    """Per-request Graph session; the credential is closed once the response is done."""
    if not settings.azure_tenant_id or not settings.azure_client_id:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Microsoft Graph is not configured",
        )

    credential = create_credential(user_assertion=user.access_token)
    try:
        client = create_graph_client("graph_api", credential=credential)
        if client is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Microsoft Graph is not configured",
            )
        yield _build_session(request, client)
    finally:
        await credential.close()


def _build_session(request: Request, client: Any) -> GraphSession:
    consent = ConsentHandler(redirect_uri=str(request.url_for("auth_callback")))
    wrapper = CaeCallWrapper(settings.graph_scope_list, consent)
    directory = DirectoryService(
        client,
        wrapper,
        max_rows=settings.graph_collection_max_rows,
        page_timeout=settings.graph_page_timeout,
    )
    return GraphSession(directory=directory, consent=consent)


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def _user_to_dict(user: Any) -> dict[str, Any]:
    return {
        "id": getattr(user, "id", None),
        "display_name": getattr(user, "display_name", None),
        "user_principal_name": getattr(user, "user_principal_name", None),
        "mail": getattr(user, "mail", None),
        "job_title": getattr(user, "job_title", None),
    }


def _group_to_dict(group: Any) -> dict[str, Any]:
    return {
        "id": getattr(group, "id", None),
        "display_name": getattr(group, "display_name", None),
        "description": getattr(group, "description", None),
        "mail": getattr(group, "mail", None),
        "visibility": getattr(group, "visibility", None),
        "group_types": list(getattr(group, "group_types", None) or []),
    }


def _fido2_to_dict(method: Any) -> dict[str, Any]:
    created = getattr(method, "created_date_time", None)
    attestation = getattr(method, "attestation_level", None)
    return {
        "id": getattr(method, "id", None),
        "display_name": getattr(method, "display_name", None),
        "model": getattr(method, "model", None),
        "created_date_time": created.isoformat() if created is not None else None,
        "attestation_level": getattr(attestation, "value", attestation),
    }


# ── Graph error mapping ───────────────────────────────────────────────────


@app.exception_handler(TimeoutError)
async def graph_timeout_handler(request: Request, exc: TimeoutError) -> JSONResponse:
    logger.error("graph.request.timeout", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        content={"detail": "Microsoft Graph did not respond in time"},
    )


@app.exception_handler(PagingCancelledError)
async def graph_cancelled_handler(request: Request, exc: PagingCancelledError) -> JSONResponse:
    logger.warning("graph.request.cancelled", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Microsoft Graph request was cancelled"},
    )


@app.exception_handler(APIError)
async def graph_api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    logger.error(
        "graph.request.failed",
        path=request.url.path,
        status_code=getattr(exc, "response_status_code", None),
        error=error_message(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": f"Microsoft Graph request failed: {error_message(exc)}"},
    )


@app.exception_handler(DirectoryAccessDeniedError)
async def graph_access_denied_handler(request: Request, exc: DirectoryAccessDeniedError) -> JSONResponse:
    logger.warning("graph.request.denied", path=request.url.path)
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


def _outcome_response(
    request: Request,
    session: GraphSession,
    outcome: GraphOutcome[Any],
    render: Callable[[Any], Any],
) -> Any:
    """Map a Graph outcome onto an HTTP response."""
    if outcome.challenged:
        redirect = session.consent.redirect_url
        if _wants_html(request):
            return RedirectResponse(url=redirect, status_code=status.HTTP_302_FOUND)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Re-authentication required", "login_url": redirect},
            headers={"WWW-Authenticate": session.consent.www_authenticate()},
        )

    if outcome.error is not None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Microsoft Graph request failed: {error_message(outcome.error)}",
        )

    return render(outcome.value)


def _list_of(render_item: Callable[[Any], dict[str, Any]]) -> Callable[[Any], dict[str, Any]]:
    def _render(items: Any) -> dict[str, Any]:
        rendered = [render_item(i) for i in items or []]
        return {"value": rendered, "count": len(rendered)}

    return _render


@app.get("/graph/me")
async def graph_me(request: Request, session: GraphSession = Depends(get_graph_session)) -> Any:
    outcome = await session.directory.get_me()
    return _outcome_response(request, session, outcome, _user_to_dict)


@app.get("/graph/me/photo")
async def graph_my_photo(request: Request, session: GraphSession = Depends(get_graph_session)) -> Any:
    outcome = await session.directory.get_my_photo()

    def _render(content: bytes | None) -> Response:
        if content is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return Response(content=content, media_type="image/jpeg")

    return _outcome_response(request, session, outcome, _render)


@app.get("/graph/me/groups")
async def graph_my_groups(request: Request, session: GraphSession = Depends(get_graph_session)) -> Any:
    outcome = await session.directory.get_member_of()
    return _outcome_response(request, session, outcome, _list_of(_group_to_dict))


@app.get("/graph/users")
async def graph_users(request: Request, session: GraphSession = Depends(get_graph_session)) -> Any:
    outcome = await session.directory.get_users()
    return _outcome_response(request, session, outcome, _list_of(_user_to_dict))


@app.get("/graph/users/search")
async def graph_search_users(
    request: Request,
    q: str = Query(..., min_length=1, max_length=256),
    session: GraphSession = Depends(get_graph_session),
) -> Any:
    """Users whose display name, UPN or mail starts with ``q``."""
    try:
        outcome = await session.directory.search_users(q)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _outcome_response(request, session, outcome, _list_of(_user_to_dict))


@app.get("/graph/users/{user_id}")
async def graph_user(
    user_id: str,
    request: Request,
    session: GraphSession = Depends(get_graph_session),
) -> Any:
    """A single user by object ID or user principal name."""
    outcome = await session.directory.get_user(user_id)

    def _render(user: Any) -> dict[str, Any]:
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return _user_to_dict(user)

    return _outcome_response(request, session, outcome, _render)


@app.get("/graph/groups")
async def graph_groups(request: Request, session: GraphSession = Depends(get_graph_session)) -> Any:
    outcome = await session.directory.get_groups()
    return _outcome_response(request, session, outcome, _list_of(_group_to_dict))


@app.get("/graph/me/fido2-methods")
async def graph_my_fido2_methods(request: Request, session: GraphSession = Depends(get_graph_session)) -> Any:
    outcome = await session.directory.list_fido2_methods()
    return _outcome_response(request, session, outcome, _list_of(_fido2_to_dict))


@app.get("/graph/users/{user_id}/fido2-methods")
async def graph_user_fido2_methods(
    user_id: str,
    request: Request,
    session: GraphSession = Depends(get_graph_session),
) -> Any:
    outcome = await session.directory.list_fido2_methods(user_id)
    return _outcome_response(request, session, outcome, _list_of(_fido2_to_dict))


@app.delete("/graph/users/{user_id}/fido2-methods/{method_id}")
async def graph_delete_fido2_method(
    user_id: str,
    method_id: str,
    request: Request,
    session: GraphSession = Depends(get_graph_session),
) -> Any:
    outcome = await session.directory.delete_fido2_method(user_id, method_id)

    def _render(deleted: bool | None) -> Response:
        if not deleted:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="FIDO2 method not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return _outcome_response(request, session, outcome, _render)


# ── File Share Endpoints ───────────────────────────────────────────────────


@app.get("/api/fileshare/download")
async def fileshare_download(
    storage_account: str = Query(..., alias="storageAccount"),
    file_share: str = Query(..., alias="fileShare"),
    file_name_regex: str = Query(..., alias="fileNameRegex"),
    directory: str | None = None,
) -> Response:
    """Return the first file matching ``fileNameRegex`` as ``download.zip``."""
    logger.info("fileshare.request.received", share=file_share)
    try:
        archive = await download_matching_file_as_zip(
            storage_account,
            file_share,
            directory,
            file_name_regex,
        )
    except FileShareError as exc:
        logger.error("fileshare.request.failed", error=str(exc))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    if archive is None:
        logger.info("fileshare.request.no_content")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return Response(
        content=archive.getvalue(),
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="download.zip"'},
    )


@app.get("/api/fileshare/ping")
async def fileshare_ping() -> str:
    return "API is up and running"
