from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from agent_turn_loop.errors import (
    SessionPersistError,
    StoreError,
    StreamInterrupted,
    ToolError,
    ToolExecutionLimitExceeded,
)
from agent_turn_loop.messages import Message, Role, Session, ToolCallRequest, ToolResult
from agent_turn_loop.observer import notify
from agent_turn_loop.reliable_provider import ReliableProvider, StreamingResponse
from agent_turn_loop.store.base import SessionStore
from agent_turn_loop.tool_dispatcher import ToolDispatcher

INTERRUPTED_MARKER = "\n\n[interrupted]"


class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    TOOLS_REQUESTED = "tools_requested"
    DISPATCHING_TOOLS = "dispatching_tools"
    FINAL = "final"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"


def iteration_limit_notice(max_iterations: int) -> str:
    return (
        f"[Stopped: reached the limit of {max_iterations} model round-trips without a final answer. "
        f"Ask me to continue if the task is not finished.]"
    )


@dataclass
class TurnResult:
    session: Session
    message: Message
    state: TurnState
    iterations: int
    max_iterations: int
    persist_error: SessionPersistError | None = None
    stream_interrupted: bool = False

    @property
    def completed(self) -> bool:
        return self.state is TurnState.FINAL

    def raise_for_status(self) -> None:
        if self.state is TurnState.ITERATION_LIMIT_REACHED:
            raise ToolExecutionLimitExceeded(self.max_iterations)
        if self.persist_error is not None:
            raise self.persist_error


class TurnController:
    """Drives one user turn to a final assistant answer.

    Each round-trip sends the whole session history to the provider. A reply
    without tool calls ends the turn. A reply with tool calls is appended, its
    calls are dispatched as one batch, and one tool message per call is
    appended in request order before the next round-trip. The session is
    written to the store once the turn ends, successfully or not.
    """

    def __init__(
        self,
        provider: ReliableProvider,
        dispatcher: ToolDispatcher,
        *,
        store: SessionStore | None = None,
        observer: Any = None,
        max_iterations: int = 10,
        streaming_preferred: bool = True,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._provider = provider
        self._dispatcher = dispatcher
        self._store = store
        self._observer = observer
        self._max_iterations = max_iterations
        self._streaming_preferred = streaming_preferred

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def run_turn(self, session: Session, user_input: str) -> TurnResult:
        session.append(Message.user(user_input))
        return await self.resume_turn(session)

    async def resume_turn(self, session: Session) -> TurnResult:
        """Continue a turn whose history ends with a user or tool message.

        Used to retry a turn that was aborted by a transport error without
        appending the user message a second time.
        """
        if not session.messages or session.messages[-1].role not in (Role.USER, Role.TOOL):
            raise ValueError("resume_turn requires history ending with a user or tool message")
        try:
            result = await self._run_loop(session)
        except BaseException:
            self._persist(session)
            raise

        result.persist_error = self._persist(session)
        return result

    async def _run_loop(self, session: Session) -> TurnResult:
        last_content = ""
        iterations = 0

        while iterations < self._max_iterations:
            iterations += 1
            self._enter(TurnState.AWAITING_MODEL, session, iterations)

            try:
                reply = await self._request(session)
            except StreamInterrupted as ex:
                logger.warning(f"Keeping {len(ex.partial_text)} chars of interrupted stream as the answer: {ex.cause}")
                final = session.append(Message.assistant(ex.partial_text))
                self._enter(TurnState.FINAL, session, iterations)
                return self._result(session, final, TurnState.FINAL, iterations, stream_interrupted=True)

            if not reply.has_tool_calls:
                final = session.append(reply)
                self._enter(TurnState.FINAL, session, iterations)
                return self._result(session, final, TurnState.FINAL, iterations)

            self._enter(TurnState.TOOLS_REQUESTED, session, iterations)
            session.append(reply)
            if reply.content:
                last_content = reply.content

            self._enter(TurnState.DISPATCHING_TOOLS, session, iterations)
            for result in await self._dispatch(session, reply.tool_calls):
                session.append(Message.tool_result(result))

        notice = iteration_limit_notice(self._max_iterations)
        logger.warning(f"Session {session.id}: {notice}")
        final = session.append(Message.assistant(f"{last_content}\n\n{notice}" if last_content else notice))
        self._enter(TurnState.ITERATION_LIMIT_REACHED, session, iterations)
        return self._result(session, final, TurnState.ITERATION_LIMIT_REACHED, iterations)

    async def _request(self, session: Session) -> Message:
        handle = await self._provider.complete(session.history(), self._streaming_preferred)
        try:
            return await handle.message()
        except asyncio.CancelledError:
            if isinstance(handle, StreamingResponse) and handle.text_so_far:
                session.append(Message.assistant(handle.text_so_far + INTERRUPTED_MARKER))
            raise

    async def _dispatch(self, session: Session, calls: tuple[ToolCallRequest, ...]) -> list[ToolResult]:
        try:
            return await self._dispatcher.dispatch(calls)
        except asyncio.CancelledError:
            # Keep the history valid: every requested call gets an answer.
            for call in calls:
                session.append(
                    Message.tool_result(
                        ToolResult(
                            id=call.id,
                            output="",
                            error="Tool call interrupted by the user",
                            error_kind=ToolError.INTERRUPTED,
                        )
                    )
                )
            raise

    def _persist(self, session: Session) -> SessionPersistError | None:
        if self._store is None:
            session.persisted_count = len(session.messages)
            return None
        try:
            for message in session.unpersisted:
                self._store.append(session.id, message)
                session.persisted_count += 1
        except StoreError as ex:
            pending = len(session.messages) - session.persisted_count
            logger.error(f"Session {session.id}: {pending} message(s) not persisted: {ex}")
            return SessionPersistError(session.id, ex)
        return None

    def _enter(self, state: TurnState, session: Session, iteration: int) -> None:
        logger.debug(f"Session {session.id} iteration {iteration}/{self._max_iterations}: {state.value}")
        notify(self._observer, "on_state", state.value)

    def _result(
        self,
        session: Session,
        message: Message,
        state: TurnState,
        iterations: int,
        *,
        stream_interrupted: bool = False,
    ) -> TurnResult:
        return TurnResult(
            session=session,
            message=message,
            state=state,
            iterations=iterations,
            max_iterations=self._max_iterations,
            stream_interrupted=stream_interrupted,
        )
