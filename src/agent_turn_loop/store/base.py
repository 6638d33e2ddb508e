from __future__ import annotations

from typing import Protocol, runtime_checkable

from agent_turn_loop.messages import Message


@runtime_checkable
class SessionStore(Protocol):
    def append(self, session_id: str, message: Message) -> None:
        """Durably append one message. Fails with StoreError."""
        ...

    def load(self, session_id: str) -> list[Message]: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._messages: dict[str, list[Message]] = {}

    def append(self, session_id: str, message: Message) -> None:
        self._messages.setdefault(session_id, []).append(message)

    def load(self, session_id: str) -> list[Message]:
        return list(self._messages.get(session_id, []))
