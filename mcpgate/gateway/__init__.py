"""
Tool protocol gateway.

Lets an LLM call tools hosted by separate MCP server processes::

    ServerConfig --> ConnectionManager --(local)--> sandbox --> stdio proxy --> subprocess
                                       --(stream)--> SSE session
    model tool calls --> ToolExecutor --> ConnectionManager --> ToolResults

Local subprocesses are only ever spawned by the stdio proxy, after the launch
sandbox has accepted the command.
"""

from mcpgate.gateway.errors import (
    CommandRejectedError,
    GatewayError,
    RequestTimeoutError,
    ServerConnectionError,
    ServerNotConnectedError,
    TransportError,
)
from mcpgate.gateway.schema import (
    CapabilitySet,
    ConnectionStatus,
    ServerConfig,
    ServerTool,
    Tool,
    ToolCall,
    ToolResult,
    TransportKind,
)

__all__ = [
    "CapabilitySet",
    "CommandRejectedError",
    "ConnectionStatus",
    "GatewayError",
    "RequestTimeoutError",
    "ServerConfig",
    "ServerConnectionError",
    "ServerNotConnectedError",
    "ServerTool",
    "Tool",
    "ToolCall",
    "ToolResult",
    "TransportError",
    "TransportKind",
]
