"""
mcpgate Tool Formats - Function-calling wire formats for LLM providers.

This module maps the provider-neutral Tool / ToolCall / ToolResult models to
and from each vendor's function-calling format, and provides a factory that
selects the adapter for a vendor.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from mcpgate.gateway.schema import Tool, ToolCall, ToolResult

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Error: "


class Vendor(str, Enum):
    """LLM providers with a known function-calling format."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    GROQ = "groq"


def stringify_result(result: Any) -> str:
    """Render a tool result as text the model can read."""
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str)


def _object_schema(tool: Tool) -> Dict[str, Any]:
    schema = tool.input_schema or {}
    return {
        "type": "object",
        "properties": schema.get("properties") or {},
        "required": schema.get("required") or [],
    }


def _description(tool: Tool) -> str:
    if tool.description:
        return tool.description
    server_name = getattr(tool, "server_name", None) or "MCP server"
    return f"Tool from {server_name}"


def _envelope_text(result: ToolResult) -> str:
    text = stringify_result(result.result)
    return f"{ERROR_PREFIX}{text}" if result.is_error else text


def _strip_error_prefix(content: str) -> str:
    return content[len(ERROR_PREFIX):] if content.startswith(ERROR_PREFIX) else content


class ToolFormat(ABC):
    """
    Abstract base class for a vendor's function-calling format.

    Implementations are stateless; every method is a pure mapping and must
    not fail on incomplete discovery data.

    Example:
        >>> fmt = ToolFormatFactory.create("anthropic")
        >>> calls = fmt.parse_tool_calls(response_json)
    """

    @property
    @abstractmethod
    def vendor(self) -> Vendor:
        """Return the vendor this format belongs to."""
        pass

    @abstractmethod
    def format_tools(self, tools: Iterable[Tool]) -> List[Dict[str, Any]]:
        """
        Render tools as the vendor's tool definitions.

        Args:
            tools: Discovered tools, usually ServerTools from the manager.

        Returns:
            The value to send as the request's tool list.
        """
        pass

    @abstractmethod
    def parse_tool_calls(self, response: Dict[str, Any]) -> List[ToolCall]:
        """
        Extract tool calls from a response body.

        A call whose arguments cannot be decoded is returned with ``error``
        set instead of failing the whole batch.
        """
        pass

    @abstractmethod
    def format_tool_result(self, result: ToolResult) -> Dict[str, Any]:
        """Wrap one ToolResult in the vendor's result envelope."""
        pass

    @abstractmethod
    def parse_tool_result(self, envelope: Dict[str, Any]) -> ToolResult:
        """Read a result envelope produced by :meth:`format_tool_result`."""
        pass


class AnthropicToolFormat(ToolFormat):
    """Anthropic Messages API: typed ``tool_use`` / ``tool_result`` content blocks."""

    @property
    def vendor(self) -> Vendor:
        return Vendor.ANTHROPIC

    def format_tools(self, tools: Iterable[Tool]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": _description(tool),
                "input_schema": _object_schema(tool),
            }
            for tool in tools
        ]

    def parse_tool_calls(self, response: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for block in response.get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            tool_input = block.get("input")
            if tool_input is None:
                tool_input = {}
            if isinstance(tool_input, dict):
                calls.append(ToolCall(id=block.get("id", ""), name=block.get("name", ""), input=tool_input))
            else:
                calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    error=f"Tool input must be an object, got {type(tool_input).__name__}",
                ))
        return calls

    def format_tool_result(self, result: ToolResult) -> Dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": result.tool_call_id,
            "content": _envelope_text(result),
            "is_error": result.is_error,
        }

    def parse_tool_result(self, envelope: Dict[str, Any]) -> ToolResult:
        is_error = bool(envelope.get("is_error", False))
        content = envelope.get("content", "")
        if isinstance(content, list):
            content = "\n".join(
                block.get("text", "") for block in content if isinstance(block, dict)
            )
        return ToolResult(
            tool_call_id=envelope.get("tool_use_id", ""),
            tool_name="",
            result=_strip_error_prefix(content) if is_error else content,
            is_error=is_error,
        )


class OpenAIToolFormat(ToolFormat):
    """OpenAI Chat Completions: ``tool_calls`` with JSON-string arguments."""

    @property
    def vendor(self) -> Vendor:
        return Vendor.OPENAI

    def format_tools(self, tools: Iterable[Tool]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": _description(tool),
                    "parameters": _object_schema(tool),
                },
            }
            for tool in tools
        ]

    def _message(self, response: Dict[str, Any]) -> Dict[str, Any]:
        choices = response.get("choices") or []
        if not choices:
            return {}
        return choices[0].get("message") or {}

    def parse_tool_calls(self, response: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for raw in self._message(response).get("tool_calls") or []:
            call_id = raw.get("id", "") if isinstance(raw, dict) else ""
            function = (raw.get("function") or {}) if isinstance(raw, dict) else raw
            if not isinstance(function, dict):
                logger.warning("Malformed tool call entry %s: %r", call_id, raw)
                calls.append(ToolCall(
                    id=call_id,
                    name="",
                    error=f"Malformed tool call: expected an object, got {type(function).__name__}",
                ))
                continue
            name = function.get("name", "")
            try:
                arguments = self._decode_arguments(function.get("arguments"))
            except ValueError as exc:
                logger.warning("Malformed arguments for tool call %s (%s): %s", call_id, name, exc)
                calls.append(ToolCall(id=call_id, name=name, error=f"Invalid tool arguments: {exc}"))
                continue
            calls.append(ToolCall(id=call_id, name=name, input=arguments))
        return calls

    @staticmethod
    def _decode_arguments(raw: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        if not isinstance(raw, str):
            raise ValueError(f"expected a JSON string, got {type(raw).__name__}")
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError(f"expected a JSON object, got {type(decoded).__name__}")
        return decoded

    def format_tool_result(self, result: ToolResult) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": result.tool_call_id,
            "content": _envelope_text(result),
        }

    def parse_tool_result(self, envelope: Dict[str, Any]) -> ToolResult:
        content = envelope.get("content", "")
        is_error = isinstance(content, str) and content.startswith(ERROR_PREFIX)
        return ToolResult(
            tool_call_id=envelope.get("tool_call_id", ""),
            tool_name=envelope.get("name", ""),
            result=_strip_error_prefix(content) if is_error else content,
            is_error=is_error,
        )


class OllamaToolFormat(OpenAIToolFormat):
    """Ollama ``/api/chat``: OpenAI-style calls under ``message``, object arguments, no ids."""

    @property
    def vendor(self) -> Vendor:
        return Vendor.OLLAMA

    def _message(self, response: Dict[str, Any]) -> Dict[str, Any]:
        return response.get("message") or {}

    def format_tool_result(self, result: ToolResult) -> Dict[str, Any]:
        envelope = super().format_tool_result(result)
        envelope["tool_name"] = result.tool_name
        return envelope

    def parse_tool_result(self, envelope: Dict[str, Any]) -> ToolResult:
        result = super().parse_tool_result(envelope)
        result.tool_name = envelope.get("tool_name", "")
        return result


class GoogleToolFormat(ToolFormat):
    """Gemini: ``functionDeclarations`` in, ``functionCall`` / ``functionResponse`` parts."""

    # Keys the Gemini schema subset rejects.
    _UNSUPPORTED_SCHEMA_KEYS = ("$schema", "additionalProperties", "default")

    @property
    def vendor(self) -> Vendor:
        return Vendor.GOOGLE

    def format_tools(self, tools: Iterable[Tool]) -> List[Dict[str, Any]]:
        declarations = []
        for tool in tools:
            declaration: Dict[str, Any] = {"name": tool.name, "description": _description(tool)}
            schema = _object_schema(tool)
            if schema["properties"]:
                declaration["parameters"] = self._clean_schema(schema)
            declarations.append(declaration)
        if not declarations:
            return []
        return [{"functionDeclarations": declarations}]

    def _clean_schema(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                k: self._clean_schema(v)
                for k, v in value.items()
                if k not in self._UNSUPPORTED_SCHEMA_KEYS
            }
        if isinstance(value, list):
            return [self._clean_schema(v) for v in value]
        return value

    def parse_tool_calls(self, response: Dict[str, Any]) -> List[ToolCall]:
        candidates = response.get("candidates") or []
        if not candidates:
            return []
        parts = (candidates[0].get("content") or {}).get("parts") or []

        calls: List[ToolCall] = []
        for part in parts:
            function_call = part.get("functionCall") if isinstance(part, dict) else None
            if not function_call:
                continue
            args = function_call.get("args")
            name = function_call.get("name", "")
            if args is None or isinstance(args, dict):
                calls.append(ToolCall(id=function_call.get("id", ""), name=name, input=args or {}))
            else:
                calls.append(ToolCall(
                    id=function_call.get("id", ""),
                    name=name,
                    error=f"Function args must be an object, got {type(args).__name__}",
                ))
        return calls

    def format_tool_result(self, result: ToolResult) -> Dict[str, Any]:
        key = "error" if result.is_error else "content"
        return {
            "functionResponse": {
                "id": result.tool_call_id,
                "name": result.tool_name,
                "response": {key: stringify_result(result.result)},
            }
        }

    def parse_tool_result(self, envelope: Dict[str, Any]) -> ToolResult:
        function_response = envelope.get("functionResponse") or {}
        response = function_response.get("response") or {}
        is_error = "error" in response
        return ToolResult(
            tool_call_id=function_response.get("id", ""),
            tool_name=function_response.get("name", ""),
            result=response.get("error") if is_error else response.get("content", ""),
            is_error=is_error,
        )


class ToolFormatFactory:
    """Factory for tool-format adapters, selected by vendor."""

    _formats: Dict[Vendor, Type[ToolFormat]] = {
        Vendor.ANTHROPIC: AnthropicToolFormat,
        Vendor.OPENAI: OpenAIToolFormat,
        Vendor.GOOGLE: GoogleToolFormat,
        Vendor.OLLAMA: OllamaToolFormat,
        # OpenAI-compatible endpoints
        Vendor.OPENROUTER: OpenAIToolFormat,
        Vendor.TOGETHER: OpenAIToolFormat,
        Vendor.GROQ: OpenAIToolFormat,
    }

    @classmethod
    def register(cls, vendor: Vendor, format_class: Type[ToolFormat]) -> None:
        """Register a format for a vendor."""
        cls._formats[vendor] = format_class

    @classmethod
    def create(cls, vendor: Union[Vendor, str]) -> ToolFormat:
        """
        Create the adapter for a vendor.

        Raises:
            ValueError: If the vendor is not recognized.
        """
        try:
            key = Vendor(vendor)
        except ValueError:
            raise ValueError(f"Unknown vendor: {vendor}")
        return cls._formats[key]()

    @classmethod
    def available_vendors(cls) -> List[str]:
        return [v.value for v in cls._formats]


# ── Convenience functions ─────────────────────────────────────────────────


def format_tools_for(vendor: Union[Vendor, str], tools: Iterable[Tool]) -> List[Dict[str, Any]]:
    return ToolFormatFactory.create(vendor).format_tools(tools)


def parse_tool_calls_from(vendor: Union[Vendor, str], response: Dict[str, Any]) -> List[ToolCall]:
    return ToolFormatFactory.create(vendor).parse_tool_calls(response)


def format_tool_result_for(vendor: Union[Vendor, str], result: ToolResult) -> Dict[str, Any]:
    return ToolFormatFactory.create(vendor).format_tool_result(result)


def parse_tool_result_from(vendor: Union[Vendor, str], envelope: Dict[str, Any]) -> ToolResult:
    return ToolFormatFactory.create(vendor).parse_tool_result(envelope)


def format_tool_result_for_display(result: Any) -> str:
    """
    Render a raw tool-server result as display text.

    Text items are shown verbatim; images and embedded resources become
    placeholders. Anything else falls back to indented JSON.
    """
    if isinstance(result, str):
        return result

    content: Optional[Any] = result.get("content") if isinstance(result, dict) else None
    if isinstance(content, list):
        return "\n".join(_display_item(item) for item in content)
    if content:
        return str(content)

    return json.dumps(result, indent=2, default=str)


def _display_item(item: Any) -> str:
    if not isinstance(item, dict):
        return str(item)
    kind = item.get("type")
    if kind == "text":
        return item.get("text", "")
    if kind == "image":
        return "[Image]"
    if kind == "resource":
        return f"[Resource: {(item.get('resource') or {}).get('uri')}]"
    return json.dumps(item, default=str)
