"""Tests for vendor tool formats."""

import json

import pytest

from mcpgate.gateway.schema import ServerTool, Tool, ToolResult
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
    stringify_result,
)


@pytest.fixture
def issue_tool():
    return ServerTool(
        name="create_issue",
        description="Create a GitHub issue",
        inputSchema={
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "properties": {"title": {"type": "string", "default": "untitled"}},
            "required": ["title"],
            "additionalProperties": False,
        },
        server_id="srv-github",
        server_name="GitHub",
    )


@pytest.fixture
def bare_tool():
    """A tool with no description and no schema."""
    return ServerTool(name="ping", server_id="srv-memory", server_name="Memory")


class TestToolFormatFactory:
    """Tests for ToolFormatFactory."""

    @pytest.mark.parametrize(
        "vendor,expected",
        [
            ("anthropic", AnthropicToolFormat),
            ("openai", OpenAIToolFormat),
            ("google", GoogleToolFormat),
            ("ollama", OllamaToolFormat),
            ("groq", OpenAIToolFormat),
            ("openrouter", OpenAIToolFormat),
            ("together", OpenAIToolFormat),
        ],
    )
    def test_create(self, vendor, expected):
        fmt = ToolFormatFactory.create(vendor)

        assert isinstance(fmt, expected)
        assert isinstance(fmt, ToolFormat)

    def test_create_from_enum(self):
        assert isinstance(ToolFormatFactory.create(Vendor.GOOGLE), GoogleToolFormat)

    def test_unknown_vendor(self):
        with pytest.raises(ValueError, match="Unknown vendor"):
            ToolFormatFactory.create("mistral-unknown")

    def test_available_vendors(self):
        vendors = ToolFormatFactory.available_vendors()

        assert "anthropic" in vendors
        assert "openai" in vendors
        assert "google" in vendors


class TestFormatTools:
    """Tests for rendering tool definitions."""

    def test_anthropic(self, issue_tool):
        [definition] = format_tools_for("anthropic", [issue_tool])

        assert definition["name"] == "create_issue"
        assert definition["description"] == "Create a GitHub issue"
        assert definition["input_schema"] == {
            "type": "object",
            "properties": {"title": {"type": "string", "default": "untitled"}},
            "required": ["title"],
        }

    def test_openai(self, issue_tool):
        [definition] = format_tools_for("openai", [issue_tool])

        assert definition["type"] == "function"
        assert definition["function"]["name"] == "create_issue"
        assert definition["function"]["parameters"]["required"] == ["title"]

    def test_missing_schema_and_description(self, bare_tool):
        """Incomplete discovery data still produces a valid definition."""
        [definition] = format_tools_for("openai", [bare_tool])

        assert definition["function"]["description"] == "Tool from Memory"
        assert definition["function"]["parameters"] == {
            "type": "object",
            "properties": {},
            "required": [],
        }

    def test_plain_tool_description_fallback(self):
        [definition] = format_tools_for("anthropic", [Tool(name="ping")])

        assert definition["description"] == "Tool from MCP server"

    def test_google_wraps_declarations(self, issue_tool, bare_tool):
        [group] = format_tools_for("google", [issue_tool, bare_tool])
        issue, ping = group["functionDeclarations"]

        assert issue["parameters"] == {
            "type": "object",
            "properties": {"title": {"type": "string"}},
            "required": ["title"],
        }
        assert "parameters" not in ping

    def test_google_empty(self):
        assert format_tools_for("google", []) == []

    def test_input_order_preserved(self, issue_tool, bare_tool):
        names = [d["name"] for d in format_tools_for("anthropic", [bare_tool, issue_tool])]

        assert names == ["ping", "create_issue"]


class TestParseToolCalls:
    """Tests for extracting tool calls from responses."""

    def test_anthropic(self):
        response = {
            "content": [
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "toolu_1", "name": "create_issue", "input": {"title": "bug"}},
                {"type": "tool_use", "id": "toolu_2", "name": "ping"},
            ]
        }

        calls = parse_tool_calls_from("anthropic", response)

        assert [(c.id, c.name, c.input) for c in calls] == [
            ("toolu_1", "create_issue", {"title": "bug"}),
            ("toolu_2", "ping", {}),
        ]
        assert all(c.error is None for c in calls)

    def test_anthropic_no_tool_use(self):
        assert parse_tool_calls_from("anthropic", {"content": [{"type": "text", "text": "hi"}]}) == []
        assert parse_tool_calls_from("anthropic", {}) == []

    def test_openai(self):
        response = {
            "choices": [{
                "message": {
                    "tool_calls": [
                        {"id": "call_a", "type": "function",
                         "function": {"name": "create_issue", "arguments": '{"title": "bug"}'}},
                    ]
                }
            }]
        }

        [call] = parse_tool_calls_from("openai", response)

        assert call.id == "call_a"
        assert call.name == "create_issue"
        assert call.input == {"title": "bug"}

    def test_openai_malformed_arguments_isolated(self):
        """One undecodable call does not affect its siblings."""
        response = {
            "choices": [{
                "message": {
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "create_issue", "arguments": '{"title": "ok"}'}},
                        {"id": "c2", "function": {"name": "create_issue", "arguments": '{"title": '}},
                        {"id": "c3", "function": {"name": "ping", "arguments": ""}},
                    ]
                }
            }]
        }

        calls = parse_tool_calls_from(Vendor.OPENAI, response)

        assert [c.id for c in calls] == ["c1", "c2", "c3"]
        assert calls[0].error is None and calls[0].input == {"title": "ok"}
        assert calls[1].error.startswith("Invalid tool arguments")
        assert calls[2].error is None and calls[2].input == {}

    @pytest.mark.parametrize("vendor", ["openai", "ollama"])
    def test_malformed_entry_isolated(self, vendor):
        """A non-object entry in tool_calls fails alone."""
        message = {
            "tool_calls": [
                "garbage",
                {"id": "c2", "function": {"name": "ping", "arguments": "{}"}},
                {"id": "c3", "function": ["not", "an", "object"]},
            ]
        }
        response = {"choices": [{"message": message}]} if vendor == "openai" else {"message": message}

        calls = parse_tool_calls_from(vendor, response)

        assert len(calls) == 3
        assert calls[0].error.startswith("Malformed tool call")
        assert calls[1].error is None and calls[1].name == "ping" and calls[1].input == {}
        assert calls[2].id == "c3"
        assert calls[2].error.startswith("Malformed tool call")

    def test_openai_non_object_arguments(self):
        response = {"choices": [{"message": {"tool_calls": [
            {"id": "c1", "function": {"name": "ping", "arguments": "[1, 2]"}},
        ]}}]}

        [call] = parse_tool_calls_from("openai", response)

        assert call.error is not None

    def test_openai_without_tool_calls(self):
        assert parse_tool_calls_from("openai", {"choices": []}) == []
        assert parse_tool_calls_from("openai", {"choices": [{"message": {"content": "hi"}}]}) == []

    def test_ollama_object_arguments_and_generated_ids(self):
        response = {
            "message": {
                "role": "assistant",
                "tool_calls": [
                    {"function": {"name": "create_issue", "arguments": {"title": "bug"}}},
                    {"function": {"name": "ping", "arguments": {}}},
                ],
            }
        }

        calls = parse_tool_calls_from("ollama", response)

        assert [c.input for c in calls] == [{"title": "bug"}, {}]
        assert all(c.id.startswith("call_") for c in calls)

    def test_google(self):
        response = {
            "candidates": [{
                "content": {
                    "parts": [
                        {"text": "calling"},
                        {"functionCall": {"name": "create_issue", "args": {"title": "bug"}}},
                    ]
                }
            }]
        }

        [call] = parse_tool_calls_from("google", response)

        assert call.name == "create_issue"
        assert call.input == {"title": "bug"}
        assert call.id

    def test_google_no_candidates(self):
        assert parse_tool_calls_from("google", {"candidates": []}) == []


class TestToolResults:
    """Tests for result envelopes."""

    def test_anthropic_round_trip(self):
        """Structured results are rendered as indented JSON text."""
        result = ToolResult(tool_call_id="t1", tool_name="create_issue", result={"a": 1})

        envelope = format_tool_result_for("anthropic", result)

        assert envelope == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": json.dumps({"a": 1}, indent=2),
            "is_error": False,
        }
        parsed = parse_tool_result_from("anthropic", envelope)
        assert parsed.tool_call_id == "t1"
        assert parsed.result == json.dumps({"a": 1}, indent=2)
        assert parsed.is_error is False

    def test_anthropic_error(self):
        result = ToolResult(tool_call_id="t2", tool_name="x", result="boom", is_error=True)

        envelope = format_tool_result_for("anthropic", result)
        parsed = parse_tool_result_from("anthropic", envelope)

        assert envelope["is_error"] is True
        assert envelope["content"] == "Error: boom"
        assert parsed.is_error is True
        assert parsed.result == "boom"

    def test_openai_error_marker(self):
        result = ToolResult(tool_call_id="c9", tool_name="x", result="not found", is_error=True)

        envelope = format_tool_result_for("openai", result)
        parsed = parse_tool_result_from("openai", envelope)

        assert envelope == {"role": "tool", "tool_call_id": "c9", "content": "Error: not found"}
        assert parsed.is_error is True
        assert parsed.result == "not found"

    def test_openai_success_text_unchanged(self):
        result = ToolResult(tool_call_id="c1", tool_name="x", result="fine")

        parsed = parse_tool_result_from("openai", format_tool_result_for("openai", result))

        assert parsed.result == "fine"
        assert parsed.is_error is False

    def test_ollama_carries_tool_name(self):
        result = ToolResult(tool_call_id="c1", tool_name="ping", result="pong")

        envelope = format_tool_result_for("ollama", result)
        parsed = parse_tool_result_from("ollama", envelope)

        assert envelope["tool_name"] == "ping"
        assert parsed.tool_name == "ping"

    def test_google_error_and_success(self):
        ok = ToolResult(tool_call_id="g1", tool_name="ping", result="pong")
        bad = ToolResult(tool_call_id="g2", tool_name="ping", result="down", is_error=True)

        ok_env = format_tool_result_for("google", ok)
        bad_env = format_tool_result_for("google", bad)

        assert ok_env["functionResponse"]["response"] == {"content": "pong"}
        assert bad_env["functionResponse"]["response"] == {"error": "down"}
        assert parse_tool_result_from("google", bad_env).is_error is True
        assert parse_tool_result_from("google", ok_env).result == "pong"


class TestDisplay:
    """Tests for format_tool_result_for_display and stringify_result."""

    def test_text_items_joined(self):
        raw = {"content": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]}

        assert format_tool_result_for_display(raw) == "one\ntwo"

    def test_placeholders(self):
        raw = {"content": [
            {"type": "image", "data": "...", "mimeType": "image/png"},
            {"type": "resource", "resource": {"uri": "memo://notes"}},
        ]}

        assert format_tool_result_for_display(raw) == "[Image]\n[Resource: memo://notes]"

    def test_string_passthrough(self):
        assert format_tool_result_for_display("plain") == "plain"

    def test_fallback_json(self):
        assert format_tool_result_for_display({"value": 3}) == json.dumps({"value": 3}, indent=2)

    def test_stringify(self):
        assert stringify_result("x") == "x"
        assert stringify_result([1, 2]) == json.dumps([1, 2], indent=2)
