"""HTTP server layer: FastMCP app, OAuth routes and request middleware."""

from .main import AuthSessionMiddleware, FergusMCP, create_server

__all__ = ["AuthSessionMiddleware", "FergusMCP", "create_server"]
