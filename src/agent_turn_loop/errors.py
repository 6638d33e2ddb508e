from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agent_turn_loop.usage import UsageSnapshot


class AgentLoopError(Exception):
    """Base class for every error raised by the agent runtime."""


class AdapterError(AgentLoopError):
    def __init__(self, message: str, *, adapter: str = "") -> None:
        super().__init__(message)
        self.adapter = adapter


class StreamingUnsupported(AdapterError):
    pass


class AdapterUnreachable(AdapterError):
    pass


class RateLimited(AdapterError):
    def __init__(self, message: str, *, adapter: str = "", retry_after: float | None = None) -> None:
        super().__init__(message, adapter=adapter)
        self.retry_after = retry_after


class ProviderUnavailable(AgentLoopError):
    def __init__(self, errors: list[AdapterError]) -> None:
        names = ", ".join(e.adapter or "unknown" for e in errors) or "none configured"
        super().__init__(f"No provider adapter could be reached ({names})")
        self.errors = errors


class StreamInterrupted(AgentLoopError):
    def __init__(self, partial_text: str, *, usage: UsageSnapshot | None = None, cause: BaseException | None = None):
        super().__init__(f"Stream interrupted after {len(partial_text)} chars: {cause}")
        self.partial_text = partial_text
        self.usage = usage
        self.cause = cause


class ToolError(AgentLoopError):
    NOT_FOUND = "not_found"
    INVALID_ARGUMENTS = "invalid_arguments"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    POLICY = "policy"
    INTERRUPTED = "interrupted"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class ToolExecutionLimitExceeded(AgentLoopError):
    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Turn stopped after {max_iterations} model round-trips without a final answer")
        self.max_iterations = max_iterations


class StoreError(AgentLoopError):
    pass


class SessionPersistError(AgentLoopError):
    def __init__(self, session_id: str, cause: StoreError) -> None:
        super().__init__(f"Failed to persist session {session_id}: {cause}")
        self.session_id = session_id
        self.cause = cause
