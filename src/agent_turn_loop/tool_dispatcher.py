from __future__ import annotations

import asyncio
import inspect
import json
import time
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from loguru import logger

from agent_turn_loop.errors import ToolError
from agent_turn_loop.messages import ToolCallRequest, ToolResult
from agent_turn_loop.observer import notify
from agent_turn_loop.policy import AllowAllPolicy, ToolPolicy
from agent_turn_loop.tool import Tool


class ToolDispatcher:
    """Runs a batch of tool calls concurrently and returns results in request order.

    A failing, denied, unknown or timed-out call only produces an error-bearing
    result for its own id. Timed-out invocations are cancelled but never awaited,
    so a tool that ignores cancellation (or runs in a worker thread) cannot hold
    up the batch; it finishes detached and its late outcome is only logged.
    """

    def __init__(
        self,
        tools: Iterable[Tool] | Mapping[str, Tool],
        *,
        policy: ToolPolicy | None = None,
        timeout_seconds: float = 60.0,
        max_concurrency: int = 8,
        max_result_chars: int = 40_000,
        observer: Any = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if isinstance(tools, Mapping):
            self._tool_map: dict[str, Tool] = dict(tools)
        else:
            self._tool_map = {t.name: t for t in tools}
        self._policy = policy or AllowAllPolicy()
        self._timeout_seconds = timeout_seconds
        self._max_concurrency = max(1, max_concurrency)
        self._max_result_chars = max_result_chars
        self._observer = observer
        self._detached: set[asyncio.Future] = set()

    @property
    def detached_count(self) -> int:
        return len(self._detached)

    async def dispatch(self, requests: Sequence[ToolCallRequest]) -> list[ToolResult]:
        results: list[ToolResult | None] = [None] * len(requests)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_slot(index: int, request: ToolCallRequest) -> None:
            async with semaphore:
                results[index] = await self._run_one(request)

        slots = [asyncio.create_task(run_slot(i, r)) for i, r in enumerate(requests)]
        try:
            await asyncio.gather(*slots)
        except asyncio.CancelledError:
            for slot in slots:
                slot.cancel()
            logger.warning(f"Tool dispatch interrupted with {sum(not s.done() for s in slots)} call(s) in flight")
            raise

        return [r for r in results if r is not None]

    async def _run_one(self, request: ToolCallRequest) -> ToolResult:
        notify(self._observer, "on_tool_started", request)
        started = time.perf_counter()
        try:
            output = await self._invoke(request)
            result = ToolResult(
                id=request.id,
                output=self._truncate_tool_result(self._render_output(output), request.name),
                duration=time.perf_counter() - started,
            )
        except ToolError as ex:
            result = ToolResult(
                id=request.id,
                output="",
                error=ex.message,
                error_kind=ex.kind,
                duration=time.perf_counter() - started,
            )
        except Exception as ex:
            result = ToolResult(
                id=request.id,
                output="",
                error=f'Error executing tool "{request.name}": {ex}',
                error_kind=ToolError.EXECUTION,
                duration=time.perf_counter() - started,
            )

        if result.is_error:
            logger.info(f"Tool {request.name} ({request.id}) failed [{result.error_kind}]: {result.error}")
        else:
            logger.debug(f"Tool {request.name} ({request.id}) completed in {result.duration:.2f}s")
        notify(self._observer, "on_tool_completed", result)
        return result

    async def _invoke(self, request: ToolCallRequest) -> Any:
        if not self._policy.allowed(request):
            raise ToolError(ToolError.POLICY, self._policy.describe_denial(request) or "Denied by tool policy")

        tool = self._tool_map.get(request.name)
        if tool is None:
            raise ToolError(ToolError.NOT_FOUND, f'Unknown tool "{request.name}"')

        invocation = asyncio.ensure_future(self._execute(tool, request.arguments))
        try:
            done, _ = await asyncio.wait({invocation}, timeout=self._timeout_seconds)
        except asyncio.CancelledError:
            self._abandon(invocation, request)
            raise

        if not done:
            self._abandon(invocation, request)
            raise ToolError(
                ToolError.TIMEOUT,
                f'Tool "{request.name}" timed out after {self._timeout_seconds:g}s',
            )
        return invocation.result()

    @staticmethod
    async def _execute(tool: Tool, arguments: dict[str, Any]) -> Any:
        execute = tool.execute
        if inspect.iscoroutinefunction(execute):
            return await execute(arguments)
        result = await asyncio.to_thread(execute, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _abandon(self, invocation: asyncio.Future, request: ToolCallRequest) -> None:
        invocation.cancel()
        if invocation.done():
            return
        self._detached.add(invocation)

        def _finished(task: asyncio.Future) -> None:
            self._detached.discard(task)
            if task.cancelled():
                logger.debug(f"Abandoned tool call {request.name} ({request.id}) cancelled")
            elif task.exception() is not None:
                logger.warning(f"Abandoned tool call {request.name} ({request.id}) failed late: {task.exception()}")
            else:
                logger.debug(f"Abandoned tool call {request.name} ({request.id}) finished late; result discarded")

        invocation.add_done_callback(_finished)

    @staticmethod
    def _render_output(output: Any) -> str:
        if output is None:
            return ""
        if isinstance(output, str):
            return output
        return json.dumps(output, indent=2, default=str)

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        if self._max_result_chars <= 0 or len(result) <= self._max_result_chars:
            return result

        original_length = len(result)
        logger.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_result_chars:,} chars"
        )
        return (
            result[: self._max_result_chars]
            + f"\n\n[OUTPUT TRUNCATED: Showing {self._max_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
