"""Client-facing OAuth endpoints of the proxy.

Handlers are intentionally thin:

1. Parse and validate HTTP-layer parameters.
2. Delegate business logic to :class:`~fergus_mcp.auth.proxy.OAuthProxy`
   in a worker thread (provider and storage calls block).
3. Map :class:`~fergus_mcp.auth.errors.OAuthProxyError` to a response.

SECURITY NOTE
-------------
• No raw secrets (state, code verifiers, access / refresh tokens, client
  secrets) are ever logged.
• Correlation IDs, if present in ``request.state.correlation_id``, are included
  in INFO logs to aid troubleshooting.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from json import JSONDecodeError
from typing import TYPE_CHECKING, Any

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from fergus_mcp.auth.errors import (
    OAuthProxyError,
    ServerError,
    UnsupportedResponseTypeError,
)
from fergus_mcp.auth.proxy import OAuthProxy
from fergus_mcp.auth.sessions import SessionRegistry

if TYPE_CHECKING:  # pragma: no cover
    from fergus_mcp.servers.main import FergusMCP  # circular – only for typing

_LOG = logging.getLogger("fergus-mcp.auth.routes")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

AUTHORIZATION_SERVER_METADATA_PATHS = (
    "/.well-known/oauth-authorization-server",
    # Claude Desktop probes with the resource path appended
    "/.well-known/oauth-authorization-server/mcp",
    "/oauth/token/.well-known/openid-configuration",
)
PROTECTED_RESOURCE_METADATA_PATHS = (
    "/.well-known/oauth-protected-resource",
    "/.well-known/oauth-protected-resource/mcp",
)


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny success / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{html.escape(title)}</title></head><body><h1>{html.escape(title)}</h1>"
        f"<p>{html.escape(body)}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status)


def _error_json(exc: OAuthProxyError) -> JSONResponse:
    return JSONResponse(
        exc.to_payload(), status_code=exc.status_code, headers=_NO_STORE
    )


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "-")


def base_url_for(request: Request, public_url: str | None = None) -> str:
    """Externally visible base URL (``PUBLIC_URL`` or ``https://<Host>``)."""
    if public_url:
        return public_url.rstrip("/")
    host = request.headers.get("host") or request.url.netloc
    return f"https://{host}"


async def _read_body(request: Request) -> dict[str, Any]:
    """Parse a form-encoded or JSON request body into a flat dict."""
    content_type = (request.headers.get("content-type") or "").lower()
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except JSONDecodeError:
            return {}
        return payload if isinstance(payload, dict) else {}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def register_oauth_routes(
    app: "FergusMCP",
    proxy: OAuthProxy,
    sessions: SessionRegistry,
    *,
    public_url: str | None = None,
) -> None:
    """Attach discovery, registration, OAuth and health endpoints to *app*."""

    # ----- discovery metadata --------------------------------------------- #
    async def _authorization_server_metadata(request: Request) -> Response:
        return JSONResponse(
            proxy.authorization_server_metadata(base_url_for(request, public_url))
        )

    async def _protected_resource_metadata(request: Request) -> Response:
        return JSONResponse(
            proxy.protected_resource_metadata(base_url_for(request, public_url))
        )

    for path in AUTHORIZATION_SERVER_METADATA_PATHS:
        app.custom_route(path, methods=["GET"])(_authorization_server_metadata)
    for path in PROTECTED_RESOURCE_METADATA_PATHS:
        app.custom_route(path, methods=["GET"])(_protected_resource_metadata)

    # ----- POST /oauth/register ------------------------------------------- #
    @app.custom_route("/oauth/register", methods=["POST"])
    async def _register(request: Request) -> Response:  # noqa: D401
        payload = await _read_body(request)
        redirect_uris = payload.get("redirect_uris") or []
        if isinstance(redirect_uris, str):
            redirect_uris = [redirect_uris]
        registration = proxy.register_client(
            [uri for uri in redirect_uris if isinstance(uri, str)]
        )
        return JSONResponse(registration, status_code=201, headers=_NO_STORE)

    # ----- GET /oauth/authorize ------------------------------------------- #
    @app.custom_route("/oauth/authorize", methods=["GET"])
    async def _authorize(request: Request) -> Response:  # noqa: D401
        params = request.query_params
        response_type = params.get("response_type")
        if response_type and response_type != "code":
            return _error_json(
                UnsupportedResponseTypeError("only response_type=code is supported")
            )

        authorize_url = await run_in_threadpool(
            proxy.begin,
            params.get("client_id"),
            params.get("redirect_uri"),
            params.get("state"),
            params.get("code_challenge"),
        )
        _LOG.info(
            "OAuth authorize client_id=%s correlation_id=%s",
            params.get("client_id") or "-",
            _correlation_id(request),
        )
        return RedirectResponse(authorize_url, status_code=302)

    # ----- GET /oauth/callback -------------------------------------------- #
    @app.custom_route("/oauth/callback", methods=["GET"])
    async def _callback(request: Request) -> Response:  # noqa: D401
        params = request.query_params
        try:
            redirect_url = await run_in_threadpool(
                proxy.complete,
                params.get("code"),
                params.get("state"),
                params.get("error"),
                params.get("error_description"),
            )
        except OAuthProxyError as exc:
            _LOG.warning(
                "OAuth callback rejected error=%s correlation_id=%s",
                exc.error,
                _correlation_id(request),
            )
            return _html_page("Authorization failed", str(exc), exc.status_code)
        except Exception:  # broad: mapped to user-visible failure
            _LOG.exception(
                "OAuth callback error correlation_id=%s", _correlation_id(request)
            )
            return _html_page(
                "Authorization failed", "Failed to complete OAuth flow", 500
            )

        _LOG.info("OAuth callback success correlation_id=%s", _correlation_id(request))
        return RedirectResponse(redirect_url, status_code=302)

    # ----- POST /oauth/token ---------------------------------------------- #
    @app.custom_route("/oauth/token", methods=["POST"])
    async def _token(request: Request) -> Response:  # noqa: D401
        payload = await _read_body(request)
        try:
            body = await run_in_threadpool(
                proxy.issue_token,
                payload.get("grant_type"),
                payload.get("code"),
                payload.get("refresh_token"),
            )
        except OAuthProxyError as exc:
            _LOG.warning(
                "Token request failed error=%s status=%s correlation_id=%s",
                exc.error,
                exc.status_code,
                _correlation_id(request),
            )
            return _error_json(exc)
        except Exception:  # broad: mapped to server_error
            _LOG.exception(
                "Token endpoint error correlation_id=%s", _correlation_id(request)
            )
            return _error_json(ServerError())
        return JSONResponse(body, headers=_NO_STORE)

    # ----- GET /health ---------------------------------------------------- #
    @app.custom_route("/health", methods=["GET"], include_in_schema=False)
    async def _health(request: Request) -> Response:  # noqa: D401
        return JSONResponse(
            {
                "status": "healthy",
                "activeSessions": sessions.count(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
