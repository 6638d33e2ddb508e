from dataclasses import dataclass
from typing import Any

from agent_turn_loop.reliable_provider import ReliableProvider
from agent_turn_loop.store.sqlite_store import SqliteSessionStore
from agent_turn_loop.tool_dispatcher import ToolDispatcher


@dataclass
class AgentConfig:
    provider: ReliableProvider
    dispatcher: ToolDispatcher
    system_prompt: str = ""
    session_store: SqliteSessionStore | None = None
    resume_session_id: str | None = None
    max_iterations: int = 10
    streaming: bool = True
    rate_limit_retries: int = 3
    observer: Any = None
