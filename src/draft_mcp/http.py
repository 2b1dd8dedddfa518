"""
JSON-RPC HTTP Gateway
=====================

POST {path} carries {jsonrpc, id, method, params}. Every reply is HTTP 200
with a JSON-RPC body; failures are error objects, never transport errors
(INV-GLOBAL-01).

    -32700  parse error
    -32600  request is not an object
    -32601  unknown method or unknown tool
    -32602  invalid params / missing argument
    -32000  handler error
"""

from __future__ import annotations

import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from contracts import ToolNotFoundError, ValidationError
from src.draft_mcp import __version__
from src.draft_mcp.config import Settings
from src.draft_mcp.server import DraftMCPServer, serialize_result

logger = logging.getLogger("draft-mcp.http")

PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000


class RPCResponse(JSONResponse):
    media_type = "application/json; charset=utf-8"


class RPCError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code


def _envelope(rpc_id: Any, *, result: Any = None, error: RPCError | None = None) -> RPCResponse:
    body: dict[str, Any] = {"jsonrpc": "2.0", "id": rpc_id}
    if error is not None:
        body["error"] = {"code": error.code, "message": str(error)}
    else:
        body["result"] = result
    return RPCResponse(body)


async def dispatch(server: DraftMCPServer, method: Any, params: Any) -> Any:
    """Run one JSON-RPC method. Raises RPCError."""
    if method == "initialize":
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "draft-mcp", "version": __version__},
        }
    if method == "ping":
        return {}
    if method == "tools/list":
        return {"tools": server.registry.listing()}
    if method != "tools/call":
        raise RPCError(METHOD_NOT_FOUND, f"Method not found: {method}")

    if not isinstance(params, dict):
        raise RPCError(INVALID_PARAMS, "params must be an object")
    name = params.get("name")
    if not isinstance(name, str) or not name:
        raise RPCError(INVALID_PARAMS, "Missing tool name")

    try:
        result = await server.registry.call(name, params.get("arguments") or {})
    except ToolNotFoundError as e:
        raise RPCError(METHOD_NOT_FOUND, str(e)) from e
    except ValidationError as e:
        raise RPCError(INVALID_PARAMS, str(e)) from e
    except Exception as e:
        logger.exception("Tool %s failed", name)
        raise RPCError(SERVER_ERROR, str(e) or e.__class__.__name__) from e

    return {"content": [{"type": "text", "text": serialize_result(result)}]}


def build_http_app(settings: Settings, server: DraftMCPServer) -> Starlette:
    """Starlette app exposing the tool registry over JSON-RPC."""

    async def rpc_endpoint(request: Request) -> RPCResponse:
        try:
            payload = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _envelope(None, error=RPCError(PARSE_ERROR, "Parse error"))
        if not isinstance(payload, dict):
            return _envelope(None, error=RPCError(INVALID_REQUEST, "Invalid Request"))

        rpc_id = payload.get("id")
        method = payload.get("method")
        try:
            result = await dispatch(server, method, payload.get("params") or {})
        except RPCError as e:
            logger.info("RPC %s -> error %d", method, e.code)
            return _envelope(rpc_id, error=e)
        return _envelope(rpc_id, result=result)

    async def health(request: Request) -> RPCResponse:
        status = await server.status()
        return RPCResponse({"status": "ok", "connected": status.connected, "version": __version__})

    routes = [
        Route("/health", health, methods=["GET"]),
        Route(settings.http.path or "/", rpc_endpoint, methods=["POST"]),
    ]
    return Starlette(routes=routes)
