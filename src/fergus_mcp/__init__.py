"""Fergus MCP server with an OAuth proxy in front of Cognito."""

import logging

__version__ = "0.1.0"

logger = logging.getLogger("fergus-mcp")


def main() -> None:
    """Start the streamable HTTP server using configuration from the environment."""
    from fergus_mcp.config import HttpConfig
    from fergus_mcp.servers.main import create_server
    from fergus_mcp.utils.logging import setup_logging

    config = HttpConfig.from_env()
    setup_logging(config.log_level)
    logger.info(
        "Starting Fergus MCP on %s:%s (token storage: %s)",
        config.host,
        config.port,
        config.session.storage,
    )
    server = create_server(config)
    server.run(transport="streamable-http", host=config.host, port=config.port)


__all__ = ["__version__", "main"]
