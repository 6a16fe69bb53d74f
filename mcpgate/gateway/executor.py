"""Tool executor - runs a model turn's tool calls concurrently with per-call fault isolation."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Sequence

from mcpgate.gateway.manager import ConnectionManager
from mcpgate.gateway.schema import ServerTool, ToolCall, ToolResult
from mcpgate.providers.base import format_tool_result_for_display

logger = logging.getLogger(__name__)


def find_tool_server(tool_name: str, tools: Sequence[ServerTool]) -> Optional[ServerTool]:
    """
    Find the server that provides ``tool_name``.

    If several servers expose the same name, the one with the smallest server
    id wins so that routing does not depend on connection order.
    """
    matches = [t for t in tools if t.name == tool_name]
    if not matches:
        return None
    if len(matches) > 1:
        owners = sorted({t.server_id for t in matches})
        logger.warning(
            "Tool %s is provided by %d servers (%s); routing to %s",
            tool_name,
            len(owners),
            ", ".join(owners),
            owners[0],
        )
    return min(matches, key=lambda t: t.server_id)


class ToolExecutor:
    """
    Executes tool calls against a ConnectionManager.

    ``execute_tool_call`` never raises for tool-level problems: unknown tools,
    undecodable arguments, disconnected servers, timeouts and server errors
    all come back as ``is_error`` results so the model can see them.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        call_timeout: Optional[float] = None,
        max_result_chars: int = 0,
    ):
        self._manager = manager
        self._call_timeout = call_timeout
        self._max_result_chars = max_result_chars

    # ── Execution ─────────────────────────────────────────────────────────

    async def execute_tool_call(self, call: ToolCall, available_tools: Sequence[ServerTool]) -> ToolResult:
        """Execute one call. Always returns a result correlated by ``call.id``."""
        if call.error:
            return ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                result=call.error,
                is_error=True,
            )

        tool = find_tool_server(call.name, available_tools)
        if tool is None:
            return ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                result=f'Tool "{call.name}" not found in any connected MCP server',
                is_error=True,
            )

        logger.info('Calling tool "%s" on server "%s"', call.name, tool.server_name)
        logger.debug("Input for %s: %s", call.id, call.input)

        t0 = time.perf_counter()
        try:
            raw_result = await self._manager.call_tool(
                tool.server_id, call.name, call.input, timeout=self._call_timeout
            )
        except Exception as exc:
            logger.error('Error executing tool "%s": %s', call.name, exc)
            return ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                result=str(exc) or type(exc).__name__,
                is_error=True,
                duration_ms=int((time.perf_counter() - t0) * 1000),
            )

        output = format_tool_result_for_display(raw_result)
        if self._max_result_chars:
            output = self.summarize(output, self._max_result_chars)

        # Tool-level failures are reported in-band by the server.
        is_error = isinstance(raw_result, dict) and bool(raw_result.get("isError"))
        if is_error:
            logger.warning('Tool "%s" reported an error', call.name)

        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.name,
            result=output,
            is_error=is_error,
            duration_ms=int((time.perf_counter() - t0) * 1000),
        )

    async def execute_tool_calls(
        self, calls: Sequence[ToolCall], available_tools: Sequence[ServerTool]
    ) -> List[ToolResult]:
        """
        Execute all calls concurrently and wait for every one to settle.

        Exactly one result is returned per call. Callers must match results
        to calls by ``tool_call_id``, not by position.
        """
        logger.info("Executing %d tool calls...", len(calls))
        outcomes = await asyncio.gather(
            *(self.execute_tool_call(call, available_tools) for call in calls),
            return_exceptions=True,
        )

        results: List[ToolResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Unexpected failure executing %s: %s", call.name, outcome)
                outcome = ToolResult(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    result=str(outcome) or type(outcome).__name__,
                    is_error=True,
                )
            results.append(outcome)

        logger.info("Completed %d tool calls", len(results))
        return results

    # ── Summarization ─────────────────────────────────────────────────────

    @staticmethod
    def summarize(output: str, max_chars: int = 500) -> str:
        """Shorten long tool output, keeping its head and tail."""
        if not output:
            return "(empty output)"
        if len(output) <= max_chars:
            return output
        half = max(max_chars // 2, 1)
        head = output[:half]
        tail = output[-half:]
        omitted = len(output) - len(head) - len(tail)
        return f"{head}\n... [{omitted} chars omitted] ...\n{tail}"


# ── Aggregates ────────────────────────────────────────────────────────────


def has_tool_errors(results: Sequence[ToolResult]) -> bool:
    return any(r.is_error for r in results)


def get_tool_execution_summary(results: Sequence[ToolResult]) -> str:
    """Status line such as ``Executed 2/3 tools successfully (1 failed)``."""
    total = len(results)
    if total == 0:
        return "No tools executed"

    errors = sum(1 for r in results if r.is_error)
    success = total - errors
    plural = "s" if total > 1 else ""

    if errors == 0:
        return f"Successfully executed {total} tool{plural}"
    if success == 0:
        return f"Failed to execute {total} tool{plural}"
    return f"Executed {success}/{total} tools successfully ({errors} failed)"
