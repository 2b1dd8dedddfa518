"""Command-line entry points for the draft MCP server."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from typing import Optional

import typer
import uvicorn

from contracts import DraftMCPError
from src.draft_mcp.config import HttpSettings, get_settings
from src.draft_mcp.http import build_http_app
from src.draft_mcp.server import DraftMCPServer

app = typer.Typer(help="Draft MCP server: idempotent, confirmed mail drafts.", no_args_is_help=True)

logger = logging.getLogger("draft-mcp")


def _configure_logging(level: str) -> None:
    # stderr only; stdout is the stdio transport
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _connected_server() -> DraftMCPServer:
    server = DraftMCPServer(get_settings())
    try:
        server.connect_from_settings()
    except DraftMCPError as e:
        logger.error("Startup failed: %s (%s)", e.code, e)
        raise typer.Exit(code=1) from e
    return server


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
    path: Optional[str] = typer.Option(None, help="JSON-RPC endpoint path. Defaults to HTTP_PATH."),
) -> None:
    """Run the JSON-RPC gateway over HTTP."""
    settings = get_settings()
    _configure_logging(settings.log_level)
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    resolved_path = path or settings.http.path

    server = _connected_server()
    settings = replace(
        settings, http=HttpSettings(host=resolved_host, port=resolved_port, path=resolved_path)
    )
    logger.info("Serving JSON-RPC on http://%s:%d%s", resolved_host, resolved_port, resolved_path)
    uvicorn.run(build_http_app(settings, server), host=resolved_host, port=resolved_port, log_level="info")


@app.command("serve-stdio")
def serve_stdio() -> None:
    """Run the MCP server over stdio transport."""
    settings = get_settings()
    _configure_logging(settings.log_level)
    server = _connected_server()
    try:
        asyncio.run(server.run())
    finally:
        server.disconnect()


if __name__ == "__main__":  # pragma: no cover
    app()
