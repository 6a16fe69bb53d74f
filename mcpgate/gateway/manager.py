"""Connection manager - owns live tool-server connections and routes calls to them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mcpgate.gateway import sandbox
from mcpgate.gateway.errors import (
    CommandRejectedError,
    RequestTimeoutError,
    ServerConnectionError,
    ServerNotConnectedError,
)
from mcpgate.gateway.proxy import ProxyClient
from mcpgate.gateway.schema import (
    CapabilitySet,
    ConnectionStatus,
    ServerConfig,
    ServerTool,
    TransportKind,
)
from mcpgate.gateway.transport import (
    LocalProcessHandle,
    StreamingEndpointHandle,
    StreamingSession,
    TransportHandle,
    discover_capabilities,
)

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """Runtime record for one server. Mutated only by the ConnectionManager."""

    server_id: str
    server_name: str
    kind: TransportKind
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    handle: Optional[TransportHandle] = None
    capabilities: CapabilitySet = field(default_factory=CapabilitySet)
    error: Optional[str] = None


class ConnectionManager:
    """
    Registry of tool-server connections keyed by server id.

    Local-process servers are launched by the stdio proxy after the launch
    sandbox accepts their command; streaming-endpoint servers get a direct
    session. Either way callers see the same ``call_tool``/``read_resource``
    surface.

    ``connect`` and ``disconnect`` for the same server id are serialized;
    different servers proceed concurrently.
    """

    def __init__(
        self,
        proxy: Optional[ProxyClient] = None,
        session_factory: Callable[[str], StreamingSession] = StreamingSession,
        connect_timeout: Optional[float] = 30.0,
        call_timeout: Optional[float] = 60.0,
    ):
        self._proxy = proxy
        self._session_factory = session_factory
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self._connections: Dict[str, Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect_all()
        if self._proxy is not None:
            await self._proxy.aclose()

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    @property
    def proxy(self) -> ProxyClient:
        if self._proxy is None:
            self._proxy = ProxyClient()
        return self._proxy

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(self, config: ServerConfig) -> Connection:
        """
        Connect to a server and discover its capabilities.

        Returns the existing connection if one is already ``connected``. Any
        stale or failed entry is torn down first. On failure the entry is left
        in ``error`` state and the exception is re-raised.
        """
        async with self._lock_for(config.id):
            existing = self._connections.get(config.id)
            if existing is not None:
                if existing.status == ConnectionStatus.CONNECTED:
                    return existing
                await self._disconnect_locked(config.id)

            self._connections[config.id] = Connection(
                server_id=config.id,
                server_name=config.name,
                kind=config.type,
                status=ConnectionStatus.CONNECTING,
            )

            try:
                handle, capabilities = await asyncio.wait_for(
                    self._open(config), timeout=self.connect_timeout
                )
            except asyncio.TimeoutError:
                message = f"Timed out connecting to {config.name} after {self.connect_timeout}s"
                self._mark_error(config, message)
                raise ServerConnectionError(message) from None
            except Exception as exc:
                self._mark_error(config, str(exc))
                raise

            connection = Connection(
                server_id=config.id,
                server_name=config.name,
                kind=config.type,
                status=ConnectionStatus.CONNECTED,
                handle=handle,
                capabilities=capabilities,
            )
            self._connections[config.id] = connection
            logger.info(
                "Connected to %s (%s): %d tools, %d resources, %d prompts",
                config.name,
                config.type.value,
                len(capabilities.tools),
                len(capabilities.resources),
                len(capabilities.prompts),
            )
            return connection

    async def _open(self, config: ServerConfig):
        if config.type == TransportKind.LOCAL_PROCESS:
            return await self._open_local_process(config)
        if config.type == TransportKind.STREAMING_ENDPOINT:
            return await self._open_streaming_endpoint(config)
        raise ServerConnectionError(f"Unsupported transport type: {config.type}")

    async def _open_local_process(self, config: ServerConfig):
        if not config.command:
            raise ServerConnectionError("Command is required for local-process transport")

        validation = sandbox.validate_command(config.command, config.args)
        if not validation.valid or validation.sanitized is None:
            raise CommandRejectedError(validation.error or "command rejected")

        env = sandbox.sanitize_environment(config.name, config.env)
        handle = LocalProcessHandle(proxy=self.proxy, server_id=config.id)
        # From here on the proxy may own a process for this id, even if connect fails.
        self._connections[config.id].handle = handle
        raw_capabilities = await self.proxy.connect(
            config.id,
            {
                "name": config.name,
                "command": validation.sanitized.command,
                "args": validation.sanitized.args,
                "env": env,
            },
        )
        capabilities = CapabilitySet.model_validate(raw_capabilities)
        return handle, capabilities

    async def _open_streaming_endpoint(self, config: ServerConfig):
        if not config.url:
            raise ServerConnectionError("URL is required for streaming-endpoint transport")

        session = self._session_factory(config.url)
        try:
            await session.open()
            capabilities = await discover_capabilities(session)
        except BaseException:
            await session.close()
            raise
        return StreamingEndpointHandle(session=session), capabilities

    def _mark_error(self, config: ServerConfig, message: str) -> None:
        logger.error("Connection to %s failed: %s", config.name, message)
        previous = self._connections.get(config.id)
        self._connections[config.id] = Connection(
            server_id=config.id,
            server_name=config.name,
            kind=config.type,
            status=ConnectionStatus.ERROR,
            error=message,
            handle=previous.handle if previous is not None else None,
        )

    async def disconnect(self, server_id: str) -> None:
        """Close a server's handle (best-effort) and forget it."""
        async with self._lock_for(server_id):
            await self._disconnect_locked(server_id)

    async def _disconnect_locked(self, server_id: str) -> None:
        connection = self._connections.pop(server_id, None)
        if connection is None or connection.handle is None:
            return
        try:
            await self._close_handle(connection.handle)
        except Exception as exc:
            logger.error("Error disconnecting from server %s: %s", server_id, exc)

    async def _close_handle(self, handle: TransportHandle) -> None:
        if isinstance(handle, LocalProcessHandle):
            await handle.proxy.disconnect(handle.server_id)
        elif isinstance(handle, StreamingEndpointHandle):
            await handle.session.close()
        else:
            raise TypeError(f"Unknown transport handle: {type(handle).__name__}")

    async def disconnect_all(self) -> Dict[str, BaseException]:
        """
        Disconnect every server. Each attempt runs regardless of the others.

        Returns:
            Mapping of server id to the exception its disconnect raised, if any.
        """
        server_ids = list(self._connections)
        outcomes = await asyncio.gather(
            *(self.disconnect(server_id) for server_id in server_ids),
            return_exceptions=True,
        )
        failures = {
            server_id: outcome
            for server_id, outcome in zip(server_ids, outcomes)
            if isinstance(outcome, BaseException)
        }
        for server_id, exc in failures.items():
            logger.error("Disconnect of %s failed: %s", server_id, exc)
        return failures

    # ── Lookup ────────────────────────────────────────────────────────────

    def get_connection(self, server_id: str) -> Optional[Connection]:
        return self._connections.get(server_id)

    def get_all_connections(self) -> List[Connection]:
        return list(self._connections.values())

    def get_all_tools(self) -> List[ServerTool]:
        """Tools of every connected server, tagged with their owner."""
        tools: List[ServerTool] = []
        for connection in self._connections.values():
            if connection.status != ConnectionStatus.CONNECTED:
                continue
            for tool in connection.capabilities.tools:
                tools.append(ServerTool(
                    name=tool.name,
                    description=tool.description,
                    input_schema=tool.input_schema,
                    server_id=connection.server_id,
                    server_name=connection.server_name,
                ))
        return tools

    # ── Requests ──────────────────────────────────────────────────────────

    def _require_connected(self, server_id: str) -> Connection:
        connection = self._connections.get(server_id)
        if connection is None:
            raise ServerNotConnectedError(f"Server {server_id} is not connected")
        if connection.status != ConnectionStatus.CONNECTED or connection.handle is None:
            raise ServerNotConnectedError(f"Server {server_id} is not in connected state")
        return connection

    async def _bounded(self, coro, what: str, timeout: Optional[float]):
        limit = self.call_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(coro, timeout=limit)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"{what} timed out after {limit}s") from None

    async def call_tool(
        self,
        server_id: str,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Invoke a tool and return the server's raw result."""
        handle = self._require_connected(server_id).handle
        arguments = arguments or {}

        if isinstance(handle, LocalProcessHandle):
            coro = handle.proxy.request(
                handle.server_id, "tools/call", {"name": name, "arguments": arguments}
            )
        elif isinstance(handle, StreamingEndpointHandle):
            coro = handle.session.call_tool(name, arguments)
        else:
            raise TypeError(f"Unknown transport handle: {type(handle).__name__}")

        try:
            return await self._bounded(coro, f"Tool {name}", timeout)
        except Exception as exc:
            logger.error("Error calling tool %s on server %s: %s", name, server_id, exc)
            raise

    async def read_resource(self, server_id: str, uri: str, timeout: Optional[float] = None) -> Any:
        handle = self._require_connected(server_id).handle

        if isinstance(handle, LocalProcessHandle):
            coro = handle.proxy.request(handle.server_id, "resources/read", {"uri": uri})
        elif isinstance(handle, StreamingEndpointHandle):
            coro = handle.session.read_resource(uri)
        else:
            raise TypeError(f"Unknown transport handle: {type(handle).__name__}")

        try:
            return await self._bounded(coro, f"Reading {uri}", timeout)
        except Exception as exc:
            logger.error("Error reading resource %s from server %s: %s", uri, server_id, exc)
            raise

    async def get_prompt(
        self,
        server_id: str,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        handle = self._require_connected(server_id).handle

        if isinstance(handle, LocalProcessHandle):
            params: Dict[str, Any] = {"name": name}
            if arguments:
                params["arguments"] = arguments
            coro = handle.proxy.request(handle.server_id, "prompts/get", params)
        elif isinstance(handle, StreamingEndpointHandle):
            coro = handle.session.get_prompt(name, arguments)
        else:
            raise TypeError(f"Unknown transport handle: {type(handle).__name__}")

        return await self._bounded(coro, f"Prompt {name}", timeout)
