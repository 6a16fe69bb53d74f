"""
Stdio proxy - privileged out-of-process launcher for local tool servers.

The connection manager never spawns subprocesses itself. It sends a
``connect`` action to this proxy, which re-validates the command with the
launch sandbox, starts the server over stdio, and keeps it alive for later
``request`` actions::

    POST /mcp/stdio  {"action": "connect", "serverId": ..., "config": {...}}
                     -> {"success": true, "capabilities": {...}}
    POST /mcp/stdio  {"action": "request", "serverId": ..., "method": ..., "params": {...}}
                     -> {"success": true, "result": {...}}
    POST /mcp/stdio  {"action": "disconnect", "serverId": ...}
                     -> {"success": true}

Failures answer ``{"error": message}`` with a 4xx/5xx status.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mcpgate.gateway import sandbox
from mcpgate.gateway.errors import (
    ProxyRequestError,
    RequestTimeoutError,
    TransportError,
)
from mcpgate.gateway.transport import StdioTransport, discover_capabilities

logger = logging.getLogger(__name__)

PROXY_PATH = "/mcp/stdio"


# ── Gateway side ──────────────────────────────────────────────────────────


class ProxyClient:
    """HTTP client for the stdio proxy contract."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8765",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def connect(self, server_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Ask the proxy to launch a server; returns its capability snapshot."""
        data = await self._post(
            {"action": "connect", "serverId": server_id, "config": config},
            "Failed to connect to tool server",
        )
        return data.get("capabilities") or {}

    async def request(
        self, server_id: str, method: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        data = await self._post(
            {"action": "request", "serverId": server_id, "method": method, "params": params or {}},
            f"Proxy request {method} failed",
        )
        return data.get("result")

    async def disconnect(self, server_id: str) -> None:
        await self._post({"action": "disconnect", "serverId": server_id}, "Failed to disconnect")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, payload: Dict[str, Any], fallback_error: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(PROXY_PATH, json=payload)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Stdio proxy timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Stdio proxy unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            raise TransportError(data.get("error") or fallback_error)
        return data


# ── Proxy side ────────────────────────────────────────────────────────────


TransportFactory = Callable[..., StdioTransport]


class StdioProxy:
    """Owns the stdio transports of every launched server."""

    def __init__(
        self,
        transport_factory: TransportFactory = StdioTransport,
        request_timeout: Optional[float] = 30.0,
    ):
        self._transport_factory = transport_factory
        self._request_timeout = request_timeout
        self._transports: Dict[str, StdioTransport] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def server_ids(self) -> List[str]:
        return list(self._transports)

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch one proxy action."""
        action = payload.get("action")
        server_id = payload.get("serverId")
        if not server_id:
            raise ProxyRequestError("serverId required")

        if action == "connect":
            config = payload.get("config")
            if not config:
                raise ProxyRequestError("Server config required for connect")
            capabilities = await self.connect(server_id, config)
            return {"success": True, "capabilities": capabilities}

        if action == "disconnect":
            await self.disconnect(server_id)
            return {"success": True}

        if action == "request":
            method = payload.get("method")
            if not method:
                raise ProxyRequestError("Method required for request")
            result = await self.request(server_id, method, payload.get("params") or {})
            return {"success": True, "result": result}

        raise ProxyRequestError(f"Unknown action: {action}")

    async def connect(self, server_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate, launch, handshake and discover. Returns wire-format capabilities."""
        validation = sandbox.validate_command(config.get("command", ""), config.get("args") or [])
        if not validation.valid or validation.sanitized is None:
            raise ProxyRequestError(f"Command validation failed: {validation.error}")

        async with self._lock_for(server_id):
            transport = self._transports.get(server_id)
            if transport is not None and transport.is_running:
                return (await discover_capabilities(transport)).to_wire()

            env = sandbox.sanitize_environment(config.get("name") or server_id, config.get("env") or {})
            transport = self._transport_factory(
                command=sandbox.resolve_executable(validation.sanitized.command),
                args=validation.sanitized.args,
                env=env,
                request_timeout=self._request_timeout,
            )
            try:
                await transport.start()
                await transport.initialize()
            except Exception as exc:
                await transport.stop()
                logger.error("Failed to launch %s: %s", server_id, exc)
                raise ProxyRequestError(f"Failed to start tool server: {exc}", status_code=500)

            self._transports[server_id] = transport
            logger.info("Launched tool server %s", server_id)
            return (await discover_capabilities(transport)).to_wire()

    async def disconnect(self, server_id: str) -> None:
        """Stop a server. Waits for an in-flight launch of the same id to settle first."""
        async with self._lock_for(server_id):
            transport = self._transports.pop(server_id, None)
            if transport is not None:
                await transport.stop()
                logger.info("Stopped tool server %s", server_id)

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    async def request(self, server_id: str, method: str, params: Dict[str, Any]) -> Any:
        transport = self._transports.get(server_id)
        if transport is None:
            raise ProxyRequestError("Server not connected", status_code=404)

        try:
            if method == "tools/list":
                return {"tools": await transport.list_tools()}
            if method == "tools/call":
                if not params.get("name"):
                    raise ProxyRequestError("Tool name required")
                return await transport.call_tool(params["name"], params.get("arguments") or {})
            if method == "resources/list":
                return {"resources": await transport.list_resources()}
            if method == "resources/read":
                if not params.get("uri"):
                    raise ProxyRequestError("Resource URI required")
                return await transport.read_resource(params["uri"])
            if method == "prompts/list":
                return {"prompts": await transport.list_prompts()}
            if method == "prompts/get":
                if not params.get("name"):
                    raise ProxyRequestError("Prompt name required")
                return await transport.get_prompt(params["name"], params.get("arguments"))
        except TransportError as exc:
            raise ProxyRequestError(str(exc), status_code=500) from exc

        raise ProxyRequestError(f"Unknown method: {method}")

    async def close_all(self) -> None:
        """Stop every server; one failure does not stop the others."""
        ids = list(self._transports)
        results = await asyncio.gather(*(self.disconnect(i) for i in ids), return_exceptions=True)
        for server_id, outcome in zip(ids, results):
            if isinstance(outcome, Exception):
                logger.error("Error closing %s: %s", server_id, outcome)


def create_proxy_app(proxy: Optional[StdioProxy] = None) -> FastAPI:
    """Build the HTTP surface of the stdio proxy."""
    proxy = proxy or StdioProxy()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Stdio proxy shutting down, closing %d servers", len(proxy.server_ids))
        await proxy.close_all()

    app = FastAPI(title="mcpgate stdio proxy", lifespan=lifespan)
    app.state.proxy = proxy

    @app.exception_handler(ProxyRequestError)
    async def handle_proxy_error(request: Request, exc: ProxyRequestError):
        logger.warning("Proxy request rejected (%s): %s", exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("[Stdio Proxy] Error: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})

    @app.post(PROXY_PATH)
    async def stdio_endpoint(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            raise ProxyRequestError("Request body must be JSON")
        if not isinstance(payload, dict):
            raise ProxyRequestError("Request body must be a JSON object")
        return await proxy.handle(payload)

    return app
