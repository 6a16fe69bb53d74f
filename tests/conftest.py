"""Shared fixtures and fakes for gateway tests."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from mcpgate.gateway.errors import TransportError
from mcpgate.gateway.schema import ServerConfig


def text_result(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": False}


class FakeProxyClient:
    """Stands in for ProxyClient; records every action."""

    def __init__(self, capabilities: Optional[Dict[str, Any]] = None):
        self.capabilities = capabilities if capabilities is not None else {
            "tools": [
                {
                    "name": "create_issue",
                    "description": "Create a GitHub issue",
                    "inputSchema": {
                        "type": "object",
                        "properties": {"title": {"type": "string"}},
                        "required": ["title"],
                    },
                }
            ],
            "resources": [],
            "prompts": [],
        }
        self.connects: List[Dict[str, Any]] = []
        self.requests: List[Dict[str, Any]] = []
        self.disconnects: List[str] = []
        self.connect_error: Optional[Exception] = None
        self.connect_delay = 0.0
        self.closed = False

    async def connect(self, server_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        self.connects.append({"server_id": server_id, "config": config})
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error:
            raise self.connect_error
        return self.capabilities

    async def request(self, server_id: str, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self.requests.append({"server_id": server_id, "method": method, "params": params})
        if method == "tools/call":
            return text_result(f"{params['name']} ok")
        if method == "resources/read":
            return {"contents": [{"uri": params["uri"], "text": "resource body"}]}
        return {}

    async def disconnect(self, server_id: str) -> None:
        self.disconnects.append(server_id)

    async def aclose(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for StreamingSession."""

    def __init__(
        self,
        url: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        fail_open: bool = False,
        fail_lists: tuple = (),
        fail_close: bool = False,
        call_delay: float = 0.0,
    ):
        self.url = url
        self.tools = tools if tools is not None else [{"name": "search", "description": "Web search"}]
        self.fail_open = fail_open
        self.fail_lists = fail_lists
        self.fail_close = fail_close
        self.call_delay = call_delay
        self.opened = False
        self.closed = False
        self.calls: List[Dict[str, Any]] = []

    async def open(self) -> None:
        if self.fail_open:
            raise TransportError(f"Failed to open session at {self.url}: connection refused")
        self.opened = True

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise RuntimeError("close failed")

    async def list_tools(self):
        if "tools" in self.fail_lists:
            raise TransportError("tools/list not supported")
        return self.tools

    async def list_resources(self):
        if "resources" in self.fail_lists:
            raise TransportError("resources/list not supported")
        return [{"uri": "memo://notes", "name": "notes", "mimeType": "text/plain"}]

    async def list_prompts(self):
        if "prompts" in self.fail_lists:
            raise TransportError("prompts/list not supported")
        return [{"name": "summarize"}]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None):
        self.calls.append({"name": name, "arguments": arguments})
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if name == "explode":
            raise TransportError("tool crashed")
        return text_result(f"{name} ok")

    async def read_resource(self, uri: str):
        return {"contents": [{"uri": uri, "text": "notes"}]}

    async def get_prompt(self, name: str, arguments=None):
        return {"messages": []}


class SessionFactory:
    """Builds FakeSessions and remembers them, keyed by URL."""

    def __init__(self, **overrides):
        self.overrides = overrides
        self.per_url: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, FakeSession] = {}

    def __call__(self, url: str) -> FakeSession:
        kwargs = {**self.overrides, **self.per_url.get(url, {})}
        session = FakeSession(url, **kwargs)
        self.sessions[url] = session
        return session


@pytest.fixture
def fake_proxy():
    return FakeProxyClient()


@pytest.fixture
def session_factory():
    return SessionFactory()


@pytest.fixture
def github_config():
    return ServerConfig(
        id="srv-github",
        name="GitHub",
        type="local-process",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-github"],
        env={"GITHUB_PERSONAL_ACCESS_TOKEN": "ghp_abc", "AWS_SECRET_ACCESS_KEY": "leak"},
    )


@pytest.fixture
def search_config():
    return ServerConfig(
        id="srv-search",
        name="Search",
        type="streaming-endpoint",
        url="http://search.local/sse",
    )
