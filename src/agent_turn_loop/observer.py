from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from loguru import logger

from agent_turn_loop.messages import StreamChunk, ToolCallRequest, ToolResult
from agent_turn_loop.usage import UsageSnapshot


@runtime_checkable
class TurnObserver(Protocol):
    def on_chunk(self, chunk: StreamChunk) -> None: ...

    def on_usage(self, snapshot: UsageSnapshot) -> None: ...

    def on_tool_started(self, request: ToolCallRequest) -> None: ...

    def on_tool_completed(self, result: ToolResult) -> None: ...

    def on_state(self, state: str) -> None: ...


class NullObserver:
    def on_chunk(self, chunk: StreamChunk) -> None:
        return

    def on_usage(self, snapshot: UsageSnapshot) -> None:
        return

    def on_tool_started(self, request: ToolCallRequest) -> None:
        return

    def on_tool_completed(self, result: ToolResult) -> None:
        return

    def on_state(self, state: str) -> None:
        return


def notify(observer: Any, method: str, *args: Any) -> None:
    """Deliver an event to a display sink; sink failures are logged, never raised."""
    if observer is None:
        return
    callback = getattr(observer, method, None)
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as ex:
        logger.warning(f"Observer {type(observer).__name__}.{method} failed: {ex}")
