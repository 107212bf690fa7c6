from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fergus_mcp.auth.proxy import OAuthProxy
    from fergus_mcp.auth.sessions import SessionRegistry
    from fergus_mcp.auth.store import TokenStore
    from fergus_mcp.config import HttpConfig


@dataclass(frozen=True)
class MainAppContext:
    """
    Context holding the components built at server startup, exposed to tools
    through the FastMCP lifespan context.
    The token store backend is fixed for the lifetime of the process.
    """

    config: HttpConfig
    token_store: TokenStore
    sessions: SessionRegistry
    proxy: OAuthProxy
