"""Main FastMCP server setup for the Fergus MCP OAuth proxy."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

import anyio
import fastmcp
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from fergus_mcp.auth.clock import Clock, default_clock
from fergus_mcp.auth.proxy import OAuthProxy
from fergus_mcp.auth.sessions import SessionRegistry
from fergus_mcp.auth.state import StateCache
from fergus_mcp.auth.store import TokenStore, create_token_store
from fergus_mcp.config import HttpConfig
from fergus_mcp.utils.logging import mask_sensitive

from .auth import register_oauth_routes
from .context import MainAppContext
from .correlation import CorrelationIdMiddleware
from .dependencies import make_token_provider

logger = logging.getLogger("fergus-mcp.server.main")

# Housekeeping period for CSRF states, idle sessions and dead token records
SWEEP_INTERVAL_SECONDS = 5 * 60

MCP_SESSION_HEADER = b"mcp-session-id"


@asynccontextmanager
async def main_lifespan(app: FastMCP[MainAppContext]) -> AsyncIterator[dict]:
    logger.debug("Fergus MCP server lifespan starting...")
    app_context: MainAppContext | None = getattr(app, "app_context", None)
    try:
        yield {"app_lifespan_context": app_context}
    except Exception as e:
        logger.error(f"Error during lifespan: {e}", exc_info=True)
        raise
    finally:
        logger.debug("Fergus MCP server lifespan shutdown complete.")


class FergusMCP(FastMCP[MainAppContext]):
    """FastMCP server owning the OAuth proxy and its stores."""

    def __init__(
        self,
        config: HttpConfig,
        token_store: TokenStore,
        sessions: SessionRegistry,
        proxy: OAuthProxy,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("name", "Fergus MCP")
        kwargs.setdefault("lifespan", main_lifespan)
        super().__init__(**kwargs)
        self.http_config = config
        self.token_store = token_store
        self.sessions = sessions
        self.proxy = proxy
        self.app_context = MainAppContext(
            config=config, token_store=token_store, sessions=sessions, proxy=proxy
        )

    def sweep(self) -> dict[str, int]:
        """Run one housekeeping pass over every expiring structure."""
        return {
            "states": self.proxy.state_cache.sweep(),
            "sessions": self.sessions.cleanup_inactive(),
            "tokens": self.token_store.cleanup_expired(),
        }

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await anyio.sleep(interval)
            try:
                counts = await run_in_threadpool(self.sweep)
            except Exception as e:
                logger.error(f"Periodic cleanup failed: {e}", exc_info=True)
                continue
            logger.debug("Periodic cleanup removed %s", counts)

    @asynccontextmanager
    async def housekeeping(
        self, interval: float = SWEEP_INTERVAL_SECONDS
    ) -> AsyncIterator[None]:
        """Run the periodic sweeper and release the token store on exit."""
        logger.info(
            "Started automatic cleanup timer (every %ss), token storage: %s",
            int(interval),
            self.token_store.backend,
        )
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._sweep_forever, interval)
                try:
                    yield
                finally:
                    tg.cancel_scope.cancel()
        finally:
            logger.info("Shutting down: clearing sessions and closing token store")
            self.sessions.clear_all()
            self.token_store.close()

    def http_app(
        self,
        path: str | None = None,
        middleware: list[Middleware] | None = None,
        transport: Literal["streamable-http", "sse"] = "streamable-http",
        **kwargs: Any,
    ) -> "Starlette":
        mcp_path = path or fastmcp.settings.streamable_http_path
        final_middleware_list = [Middleware(CorrelationIdMiddleware)]
        if self.http_config.allowed_origins:
            final_middleware_list.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=self.http_config.allowed_origins,
                    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                    allow_headers=["*"],
                    expose_headers=["mcp-session-id"],
                    allow_credentials=True,
                )
            )
        if self.http_config.allowed_hosts:
            final_middleware_list.append(
                Middleware(
                    TrustedHostMiddleware,
                    allowed_hosts=self.http_config.allowed_hosts,
                )
            )
        final_middleware_list.append(
            Middleware(AuthSessionMiddleware, mcp_server_ref=self, mcp_path=mcp_path)
        )
        if middleware:
            final_middleware_list.extend(middleware)
        app = super().http_app(
            path=path, middleware=final_middleware_list, transport=transport, **kwargs
        )

        inner_lifespan = app.router.lifespan_context

        @asynccontextmanager
        async def _lifespan(starlette_app: Starlette) -> AsyncIterator[Any]:
            async with inner_lifespan(starlette_app) as state:
                async with self.housekeeping():
                    yield state

        app.router.lifespan_context = _lifespan
        return app


class AuthSessionMiddleware:
    """ASGI middleware resolving the bearer credential on the MCP endpoint.

    The bearer value is an authentication-session id issued by the OAuth
    proxy. The middleware

    * rejects requests that carry neither a known bearer nor a live
      ``mcp-session-id`` with ``401`` and a ``WWW-Authenticate`` challenge
      pointing at the protected-resource metadata;
    * stores ``auth_session_id`` and ``token_store`` in ``request.state`` for
      :mod:`fergus_mcp.servers.dependencies`;
    * registers a transport session when the response announces a new
      ``mcp-session-id``, touches it on every request and forgets it on a
      successful ``DELETE``.
    """

    def __init__(
        self,
        app: ASGIApp,
        mcp_server_ref: Optional["FergusMCP"] = None,
        mcp_path: str = "/mcp",
    ) -> None:
        self.app = app
        self.mcp_server_ref = mcp_server_ref
        self.mcp_path = mcp_path.rstrip("/") or "/"
        if self.mcp_server_ref is None:
            logger.warning(
                "AuthSessionMiddleware initialized without mcp_server_ref. "
                "Requests will pass through unauthenticated."
            )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        # Non-HTTP scopes and other paths go straight through
        if (
            scope["type"] != "http"
            or self.mcp_server_ref is None
            or not self._is_mcp_path(scope)
        ):
            await self.app(scope, receive, send)
            return

        server = self.mcp_server_ref
        scope_copy: Scope = dict(scope)
        if "state" not in scope_copy:
            scope_copy["state"] = {}

        headers_bytes = dict(scope.get("headers", []))

        def _h(name: bytes) -> str | None:
            val = headers_bytes.get(name)
            return val.decode("latin-1") if val else None

        method = scope_copy.get("method", "GET")
        bearer = _parse_bearer(_h(b"authorization"))
        mcp_session_id = _h(MCP_SESSION_HEADER)

        session = server.sessions.get(mcp_session_id) if mcp_session_id else None
        if session is None and not mcp_session_id and bearer and method != "POST":
            # GET / DELETE without a session header: resolve through the bearer
            linked = server.sessions.get_by_auth_session(bearer)
            if linked:
                session = linked[-1]
                mcp_session_id = session.session_id
                scope_copy["headers"] = [
                    *scope.get("headers", []),
                    (MCP_SESSION_HEADER, mcp_session_id.encode("latin-1")),
                ]

        auth_session_id: str | None = None
        if bearer and await run_in_threadpool(server.token_store.has, bearer):
            auth_session_id = bearer
        elif session is not None:
            auth_session_id = session.auth_session_id

        logger.debug(
            "AuthSessionMiddleware: %s %s bearer=%s session=%s",
            method,
            scope_copy.get("path"),
            f"...{mask_sensitive(bearer, 4)}" if bearer else "-",
            mcp_session_id or "-",
        )

        async def safe_send(message: Message) -> None:
            try:
                await send(message)
            except (ConnectionResetError, BrokenPipeError, OSError) as e:
                # Client disconnected - log but don't propagate to avoid ASGI violations
                logger.debug(
                    f"Client disconnected during response: {type(e).__name__}: {e}"
                )
                return

        if auth_session_id is None and session is None:
            logger.info("Rejected unauthenticated %s on MCP endpoint", method)
            await self._send_unauthorized(safe_send, scope_copy)
            return

        scope_copy["state"]["auth_session_id"] = auth_session_id
        scope_copy["state"]["token_store"] = server.token_store
        scope_copy["state"]["mcp_session_id"] = mcp_session_id

        status: dict[str, int] = {}

        async def tracking_send(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
                self._register_session(message, auth_session_id)
            await safe_send(message)

        await self.app(scope_copy, receive, tracking_send)

        if (
            method == "DELETE"
            and mcp_session_id
            and status.get("code", 500) < 400
        ):
            server.sessions.delete(mcp_session_id)

    def _register_session(
        self, message: Message, auth_session_id: str | None
    ) -> None:
        if message["status"] >= 400 or self.mcp_server_ref is None:
            return
        server = self.mcp_server_ref
        response_headers = dict(message.get("headers", []))
        raw = response_headers.get(MCP_SESSION_HEADER)
        if not raw:
            return
        session_id = raw.decode("latin-1")
        if server.sessions.has(session_id):
            return
        server.sessions.create(
            session_id,
            transport=None,
            api_client=make_token_provider(server.token_store, auth_session_id),
            auth_session_id=auth_session_id,
        )

    def _is_mcp_path(self, scope: Scope) -> bool:
        request_path = scope.get("path", "").rstrip("/") or "/"
        return request_path == self.mcp_path

    async def _send_unauthorized(self, send: Send, scope: Scope) -> None:
        """Send a 401 JSON response with an OAuth bearer challenge."""
        server = self.mcp_server_ref
        public_url = server.http_config.public_url if server else None
        if public_url:
            base_url = public_url.rstrip("/")
        else:
            host = dict(scope.get("headers", [])).get(b"host", b"localhost")
            base_url = f"https://{host.decode('latin-1')}"
        body = json.dumps(
            {
                "error": "invalid_token",
                "error_description": "Authentication required",
                "authorizationUrl": f"{base_url}/oauth/authorize",
            }
        ).encode("utf-8")
        challenge = (
            'Bearer resource_metadata="'
            f'{base_url}/.well-known/oauth-protected-resource"'
        )
        await send(
            {
                "type": "http.response.start",
                "status": 401,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode("ascii")),
                    (b"www-authenticate", challenge.encode("latin-1")),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})


def _parse_bearer(header_val: str | None) -> str | None:
    if not header_val or not header_val.startswith("Bearer "):
        return None
    return header_val[7:].strip() or None


def create_server(
    config: HttpConfig,
    *,
    token_store: TokenStore | None = None,
    clock: Clock = default_clock,
) -> FergusMCP:
    """Build the server and every component it owns."""
    store = token_store or create_token_store(
        config.session, config.oauth, clock=clock
    )
    sessions = SessionRegistry(
        timeout_seconds=config.session.timeout_seconds, clock=clock
    )
    proxy = OAuthProxy(
        config.oauth, store, StateCache(clock=clock), sessions, clock=clock
    )
    server = FergusMCP(config, store, sessions, proxy)
    register_oauth_routes(server, proxy, sessions, public_url=config.public_url)
    logger.info(
        "Registered OAuth proxy routes (public URL: %s)",
        config.public_url or "derived from Host header",
    )
    return server
