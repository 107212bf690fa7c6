"""Unit tests for AuthSessionMiddleware against a stub MCP endpoint."""

from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from fergus_mcp.auth.sessions import SessionRegistry
from fergus_mcp.auth.store import MemoryTokenStore
from fergus_mcp.servers.main import AuthSessionMiddleware

PUBLIC_URL = "https://mcp.example.com"


class StubMCPEndpoint:
    """ASGI app that records scopes and hands out a transport session id."""

    def __init__(self) -> None:
        self.scopes: list[dict] = []
        self.status = 200

    async def __call__(self, scope, receive, send) -> None:
        self.scopes.append(scope)
        headers = [(b"content-type", b"application/json")]
        request_headers = dict(scope.get("headers", []))
        if scope["method"] == "POST" and b"mcp-session-id" not in request_headers:
            headers.append((b"mcp-session-id", b"mcp-1"))
        await send(
            {"type": "http.response.start", "status": self.status, "headers": headers}
        )
        await send({"type": "http.response.body", "body": b"{}"})

    @property
    def last_state(self) -> dict:
        return self.scopes[-1]["state"]


@pytest.fixture()
def store(oauth_config, clock, tokens_factory) -> MemoryTokenStore:
    token_store = MemoryTokenStore(oauth_config, clock=clock)
    token_store.store("auth-1", tokens_factory())
    return token_store


@pytest.fixture()
def sessions(clock) -> SessionRegistry:
    return SessionRegistry(clock=clock)


@pytest.fixture()
def endpoint() -> StubMCPEndpoint:
    return StubMCPEndpoint()


@pytest.fixture()
async def client(store, sessions, endpoint):
    server = SimpleNamespace(
        token_store=store,
        sessions=sessions,
        http_config=SimpleNamespace(public_url=PUBLIC_URL),
    )
    app = AuthSessionMiddleware(endpoint, mcp_server_ref=server, mcp_path="/mcp/")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.anyio
async def test_non_mcp_paths_pass_through(client, endpoint):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert "auth_session_id" not in endpoint.scopes[-1].get("state", {})


@pytest.mark.anyio
async def test_missing_credentials_get_challenge(client, endpoint):
    resp = await client.post("/mcp", json={})

    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_token"
    assert "resource_metadata=" in resp.headers["www-authenticate"]
    assert endpoint.scopes == []


@pytest.mark.anyio
async def test_unknown_bearer_is_rejected(client, endpoint):
    resp = await client.post("/mcp", json={}, headers=_bearer("forged"))

    assert resp.status_code == 401
    assert endpoint.scopes == []


@pytest.mark.anyio
async def test_bearer_attaches_auth_session_and_registers_transport(
    client, endpoint, store, sessions
):
    resp = await client.post("/mcp", json={}, headers=_bearer("auth-1"))

    assert resp.status_code == 200
    assert endpoint.last_state["auth_session_id"] == "auth-1"
    assert endpoint.last_state["token_store"] is store

    session = sessions.get("mcp-1")
    assert session is not None
    assert session.auth_session_id == "auth-1"
    assert await session.api_client() == "access-1"


@pytest.mark.anyio
async def test_known_session_header_resolves_auth_session(client, endpoint, sessions):
    sessions.create("mcp-1", auth_session_id="auth-1")

    resp = await client.post("/mcp", json={}, headers={"mcp-session-id": "mcp-1"})

    assert resp.status_code == 200
    assert endpoint.last_state["auth_session_id"] == "auth-1"
    assert endpoint.last_state["mcp_session_id"] == "mcp-1"


@pytest.mark.anyio
async def test_get_without_session_header_uses_linked_session(
    client, endpoint, sessions
):
    sessions.create("mcp-1", auth_session_id="auth-1")

    resp = await client.get("/mcp", headers=_bearer("auth-1"))

    assert resp.status_code == 200
    headers = dict(endpoint.scopes[-1]["headers"])
    assert headers[b"mcp-session-id"] == b"mcp-1"


@pytest.mark.anyio
async def test_successful_delete_forgets_session(client, sessions):
    sessions.create("mcp-1", auth_session_id="auth-1")

    resp = await client.delete(
        "/mcp", headers={**_bearer("auth-1"), "mcp-session-id": "mcp-1"}
    )

    assert resp.status_code == 200
    assert not sessions.has("mcp-1")


@pytest.mark.anyio
async def test_failed_response_does_not_register_session(client, endpoint, sessions):
    endpoint.status = 400

    await client.post("/mcp", json={}, headers=_bearer("auth-1"))

    assert sessions.count() == 0


@pytest.mark.anyio
async def test_rotated_bearer_wins_over_session_link(client, endpoint, sessions):
    sessions.create("mcp-1", auth_session_id="stale")

    await client.post(
        "/mcp", json={}, headers={**_bearer("auth-1"), "mcp-session-id": "mcp-1"}
    )

    assert endpoint.last_state["auth_session_id"] == "auth-1"
