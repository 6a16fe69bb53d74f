"""Tool-server transports: stdio subprocess JSON-RPC and streaming sessions."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel

from mcpgate.gateway.errors import RequestTimeoutError, TransportError
from mcpgate.gateway.schema import CapabilitySet, Prompt, Resource, Tool

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpgate", "version": "1.0.0"}

# asyncio's default 64 KiB line limit is too small for large tool results.
_STREAM_LIMIT = 16 * 1024 * 1024


class StdioTransport:
    """
    Communicate with a tool server over stdin/stdout (JSON-RPC, one message per line).

    Only the stdio proxy creates these. The environment passed in is used as
    the child's complete environment; it is not merged with ``os.environ``.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        request_timeout: Optional[float] = 30.0,
    ):
        self.command = command
        self.args = args or []
        self.env = env or {}
        self.request_timeout = request_timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._request_id = 0
        self._lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the tool-server subprocess."""
        if self.is_running:
            return

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise TransportError(
                f"Tool server command not found: {self.command}. "
                "Make sure Node.js and the runner are installed."
            )
        logger.info("Started tool server %s (pid=%s)", self.command, self._process.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def stop(self) -> None:
        """Terminate the subprocess."""
        process, self._process = self._process, None
        if process and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError):
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        if self._stderr_task:
            self._stderr_task.cancel()
            self._stderr_task = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _drain_stderr(self) -> None:
        if self._process is None or self._process.stderr is None:
            return
        stream = self._process.stderr
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("[%s stderr] %s", self.command, line.decode(errors="replace").rstrip())

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the result."""
        if not self.is_running:
            raise TransportError("Tool server process is not running")

        async with self._lock:
            self._request_id += 1
            request_id = self._request_id
            request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params:
                request["params"] = params

            try:
                await self._write(request)
                response = await asyncio.wait_for(
                    self._read_response(request_id), timeout=self.request_timeout
                )
            except asyncio.TimeoutError:
                raise RequestTimeoutError(
                    f"Timed out after {self.request_timeout}s waiting for {method}"
                ) from None
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                raise TransportError(f"Stdio transport error: {exc}") from exc

        if "error" in response:
            err = response["error"] or {}
            raise TransportError(f"Tool server error {err.get('code')}: {err.get('message')}")

        return response.get("result") or {}

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification (no response)."""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        async with self._lock:
            await self._write(message)

    async def _write(self, message: Dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise TransportError("Tool server process is not running")
        self._process.stdin.write((json.dumps(message) + "\n").encode())
        await self._process.stdin.drain()

    async def _read_response(self, request_id: int) -> Dict[str, Any]:
        if self._process is None or self._process.stdout is None:
            raise TransportError("Tool server process is not running")
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                raise TransportError("Tool server closed connection (empty response)")
            try:
                message = json.loads(raw.decode())
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON output from %s: %r", self.command, raw[:200])
                continue
            # Server-initiated notifications and requests are not answered here.
            if isinstance(message, dict) and message.get("id") == request_id:
                return message

    # ── Tool protocol ─────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the initialize handshake."""
        result = await self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"roots": {"listChanged": True}, "sampling": {}},
            "clientInfo": CLIENT_INFO,
        })
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        return (await self.send("tools/list")).get("tools", [])

    async def list_resources(self) -> List[Dict[str, Any]]:
        return (await self.send("resources/list")).get("resources", [])

    async def list_prompts(self) -> List[Dict[str, Any]]:
        return (await self.send("prompts/list")).get("prompts", [])

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.send("tools/call", {"name": name, "arguments": arguments or {}})

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        return await self.send("resources/read", {"uri": uri})

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self.send("prompts/get", params)


class StreamingSession:
    """
    A direct client session against a streaming (SSE) tool server endpoint.

    The SDK's ``sse_client`` and ``ClientSession`` context managers must be
    entered and exited by the same task, so a dedicated owner task holds them
    open until :meth:`close` is called.
    """

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.headers = headers or {}
        self._session = None
        self._runner: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._error: Optional[BaseException] = None

    async def open(self) -> None:
        self._runner = asyncio.create_task(self._run())
        await self._ready.wait()
        if self._error is not None:
            raise TransportError(f"Failed to open session at {self.url}: {self._error}") from self._error

    async def _run(self) -> None:
        from mcp import ClientSession
        from mcp.client.sse import sse_client
        from mcp.types import Implementation

        try:
            async with sse_client(self.url, headers=self.headers) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    client_info=Implementation(**CLIENT_INFO),
                ) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    await self._closing.wait()
        except Exception as exc:
            self._error = exc
            if self._session is not None:
                logger.warning("Streaming session %s ended: %s", self.url, exc)
        finally:
            self._session = None
            self._ready.set()

    async def close(self) -> None:
        self._closing.set()
        runner, self._runner = self._runner, None
        if runner is not None:
            if not self._ready.is_set():
                runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    def _require_session(self):
        if self._session is None:
            raise TransportError(f"Session to {self.url} is not open")
        return self._session

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self._require_session().list_tools()
        return [_dump(t) for t in result.tools]

    async def list_resources(self) -> List[Dict[str, Any]]:
        result = await self._require_session().list_resources()
        return [_dump(r) for r in result.resources]

    async def list_prompts(self) -> List[Dict[str, Any]]:
        result = await self._require_session().list_prompts()
        return [_dump(p) for p in result.prompts]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return _dump(await self._require_session().call_tool(name, arguments or {}))

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        from pydantic import AnyUrl

        return _dump(await self._require_session().read_resource(AnyUrl(uri)))

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return _dump(await self._require_session().get_prompt(name, arguments))


def _dump(model: Any) -> Dict[str, Any]:
    if isinstance(model, BaseModel):
        return model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return model


# ── Tagged transport handles ──────────────────────────────────────────────


@dataclass
class LocalProcessHandle:
    """A local-process server, reached through the privileged stdio proxy."""

    proxy: Any  # mcpgate.gateway.proxy.ProxyClient
    server_id: str


@dataclass
class StreamingEndpointHandle:
    """A streaming-endpoint server with a directly owned session."""

    session: StreamingSession


TransportHandle = Union[LocalProcessHandle, StreamingEndpointHandle]


# ── Capability discovery ──────────────────────────────────────────────────


async def discover_capabilities(source: Any) -> CapabilitySet:
    """
    Fetch tools, resources and prompts from ``source`` concurrently.

    ``source`` is anything with ``list_tools``/``list_resources``/
    ``list_prompts`` coroutines. A failing list is logged and left empty; the
    other lists are unaffected.
    """
    tools, resources, prompts = await asyncio.gather(
        _fetch_list("tools", source.list_tools, Tool),
        _fetch_list("resources", source.list_resources, Resource),
        _fetch_list("prompts", source.list_prompts, Prompt),
    )
    return CapabilitySet(tools=tools, resources=resources, prompts=prompts)


async def _fetch_list(
    kind: str,
    fetch: Callable[[], Awaitable[List[Dict[str, Any]]]],
    model: Type[BaseModel],
) -> list:
    try:
        return [model.model_validate(item) for item in await fetch()]
    except Exception as exc:
        logger.warning("Listing %s failed, continuing without them: %s", kind, exc)
        return []
