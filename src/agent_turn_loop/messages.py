from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agent_turn_loop.usage import UsageSnapshot


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict) -> ToolCallRequest:
        return cls(id=data["id"], name=data["name"], arguments=dict(data.get("arguments") or {}))


@dataclass(frozen=True)
class ToolResult:
    id: str
    output: str
    error: str | None = None
    error_kind: str | None = None
    duration: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    is_error: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise ValueError(f"tool_calls are only valid on assistant messages, not {self.role.value!r}")
        if self.tool_call_id is not None and self.role is not Role.TOOL:
            raise ValueError(f"tool_call_id is only valid on tool messages, not {self.role.value!r}")
        if self.is_error and self.role is not Role.TOOL:
            raise ValueError(f"is_error is only valid on tool messages, not {self.role.value!r}")

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCallRequest, ...] | list[ToolCallRequest] = ()) -> Message:
        return cls(Role.ASSISTANT, content, tuple(tool_calls))

    @classmethod
    def tool_result(cls, result: ToolResult) -> Message:
        content = result.output if result.error is None else f"Error: {result.error}"
        return cls(Role.TOOL, content, tool_call_id=result.id, is_error=result.is_error)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.is_error:
            data["is_error"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=tuple(ToolCallRequest.from_dict(tc) for tc in data.get("tool_calls", [])),
            tool_call_id=data.get("tool_call_id"),
            is_error=bool(data.get("is_error", False)),
        )


@dataclass(frozen=True)
class StreamChunk:
    delta_text: str = ""
    is_final: bool = False
    usage: UsageSnapshot | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()


@dataclass
class Session:
    """Ordered conversation record owned by one turn controller at a time.

    Messages are only ever appended; ``persisted_count`` is the number of
    leading messages already written to a session store.
    """

    id: str
    provider: str
    model: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = ""
    persisted_count: int = 0

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        self.updated_at = utc_now()
        return message

    def history(self) -> list[Message]:
        return list(self.messages)

    @property
    def unpersisted(self) -> list[Message]:
        return self.messages[self.persisted_count:]
