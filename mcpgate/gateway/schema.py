"""Data models for server configs, capabilities, tool calls, and results."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransportKind(str, Enum):
    """How the gateway reaches a tool server."""

    LOCAL_PROCESS = "local-process"
    STREAMING_ENDPOINT = "streaming-endpoint"


# Record values written by older clients.
_TRANSPORT_ALIASES = {
    "stdio": TransportKind.LOCAL_PROCESS,
    "sse": TransportKind.STREAMING_ENDPOINT,
}


class ConnectionStatus(str, Enum):
    """Lifecycle state of a server connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ServerConfig(BaseModel):
    """Persisted definition of one tool server. Read-only to the gateway."""

    id: str
    name: str
    description: Optional[str] = None
    type: TransportKind = TransportKind.LOCAL_PROCESS
    enabled: bool = True
    # local-process
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    # streaming-endpoint
    url: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _accept_legacy_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _TRANSPORT_ALIASES.get(value.lower(), value)
        return value


class Tool(BaseModel):
    """A tool advertised by a server."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="inputSchema")


class ServerTool(Tool):
    """A tool tagged with the server that owns it, used for routing calls."""

    server_id: str
    server_name: str


class Resource(BaseModel):
    """A resource advertised by a server."""

    model_config = ConfigDict(populate_by_name=True)

    uri: str
    name: str = ""
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class Prompt(BaseModel):
    """A prompt template advertised by a server."""

    name: str
    description: Optional[str] = None
    arguments: List[Dict[str, Any]] = Field(default_factory=list)


class CapabilitySet(BaseModel):
    """Snapshot of what a connected server offers. Replaced wholesale on reconnect."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tools: List[Tool] = Field(default_factory=list)
    resources: List[Resource] = Field(default_factory=list)
    prompts: List[Prompt] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with protocol field names (``inputSchema``, ``mimeType``)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ToolCall(BaseModel):
    """A single invocation request extracted from a model response."""

    id: str = ""
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    # Set when this call's arguments could not be decoded.
    error: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            raw = f"{self.name}:{self.input}:{datetime.now(timezone.utc).isoformat()}"
            self.id = "call_" + hashlib.sha256(raw.encode()).hexdigest()[:12]


class ToolResult(BaseModel):
    """Outcome of executing one ToolCall."""

    tool_call_id: str
    tool_name: str
    result: Any = None
    is_error: bool = False
    duration_ms: int = 0
