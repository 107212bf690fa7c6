"""Typed records used by the OAuth proxy core."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Final

from fergus_mcp.auth.clock import Clock, default_clock

TOKEN_TYPE: Final[str] = "Bearer"

# CSRF state entries are swept after 10 minutes
PENDING_AUTHORIZATION_TTL: Final[int] = 600


@dataclass(frozen=True, slots=True)
class OAuthTokens:
    """Token grant as returned by the identity provider (relative expiry)."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = TOKEN_TYPE


@dataclass(frozen=True, slots=True)
class TokenRecord:
    """Provider grant stored for one authentication session."""

    access_token: str
    expires_at: float
    created_at: float
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = TOKEN_TYPE

    @classmethod
    def from_grant(cls, tokens: OAuthTokens, *, now: float) -> "TokenRecord":
        """Anchor a relative provider grant at *now*."""
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or None,
            id_token=tokens.id_token or None,
            expires_at=now + tokens.expires_in,
            created_at=now,
        )

    def remaining(self, *, clock: Clock = default_clock) -> float:
        """Seconds until the access token expires (negative once expired)."""
        return self.expires_at - clock()

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return clock() >= self.expires_at

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRecord":
        """Rebuild a record; absent optional fields stay ``None``."""
        access_token = data["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token must be a non-empty string")
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            id_token=data.get("id_token") or None,
            expires_at=float(data["expires_at"]),
            created_at=float(data["created_at"]),
            token_type=data.get("token_type") or TOKEN_TYPE,
        )


@dataclass(frozen=True, slots=True)
class PendingAuthorization:
    """One in-flight authorization-code flow, keyed by the local ``state``."""

    state: str
    code_verifier: str
    created_at: float
    client_id: str | None = None
    client_state: str | None = None
    client_redirect_uri: str | None = None
    client_code_challenge: str | None = None
    ttl_seconds: int = PENDING_AUTHORIZATION_TTL

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* if the entry exceeded its TTL."""
        return (clock() - self.created_at) > self.ttl_seconds


@dataclass(slots=True)
class Session:
    """One live MCP transport session.

    ``transport`` and ``api_client`` are opaque handles owned by the transport
    layer; the registry never inspects them.
    """

    session_id: str
    transport: Any
    api_client: Any
    created_at: float
    last_accessed_at: float
    auth_session_id: str | None = None

    def idle_for(self, *, clock: Clock = default_clock) -> float:
        return clock() - self.last_accessed_at
