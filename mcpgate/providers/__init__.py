"""mcpgate providers - vendor function-calling formats."""

from mcpgate.providers.base import (
    AnthropicToolFormat,
    GoogleToolFormat,
    OllamaToolFormat,
    OpenAIToolFormat,
    ToolFormat,
    ToolFormatFactory,
    Vendor,
    format_tool_result_for,
    format_tool_result_for_display,
    format_tools_for,
    parse_tool_calls_from,
    parse_tool_result_from,
)

__all__ = [
    "AnthropicToolFormat",
    "GoogleToolFormat",
    "OllamaToolFormat",
    "OpenAIToolFormat",
    "ToolFormat",
    "ToolFormatFactory",
    "Vendor",
    "format_tool_result_for",
    "format_tool_result_for_display",
    "format_tools_for",
    "parse_tool_calls_from",
    "parse_tool_result_from",
]
