"""
mcpgate - Tool protocol gateway between LLMs and MCP tool servers.

Connects to tool servers (local subprocesses via a sandboxed stdio proxy, or
streaming endpoints), translates their tools into each LLM vendor's
function-calling format, and executes the model's tool calls concurrently
with per-call fault isolation.

Architecture:
- Launch sandbox: allow-listed commands, filtered environments
- Connection manager: one connection per server, capability discovery
- Tool formats: one adapter per vendor
- Tool executor: concurrent calls, failures returned as results
"""

__version__ = "1.0.0"
__author__ = "mcpgate Team"
__license__ = "Apache-2.0"

from mcpgate.gateway.executor import ToolExecutor
from mcpgate.gateway.manager import ConnectionManager
from mcpgate.gateway.schema import ServerConfig, ToolCall, ToolResult
from mcpgate.providers.base import ToolFormatFactory, Vendor

__all__ = [
    "ConnectionManager",
    "ServerConfig",
    "ToolCall",
    "ToolExecutor",
    "ToolFormatFactory",
    "ToolResult",
    "Vendor",
    "__version__",
]
