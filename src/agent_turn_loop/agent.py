from __future__ import annotations

import asyncio
from uuid import uuid4

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from agent_turn_loop.agent_config import AgentConfig
from agent_turn_loop.commands.router import CommandRouter
from agent_turn_loop.errors import RateLimited, StoreError
from agent_turn_loop.messages import Message, Session
from agent_turn_loop.services.session_controller import SessionController
from agent_turn_loop.turn_controller import TurnController, TurnResult
from agent_turn_loop.usage import format_usage

_BACKOFF = wait_exponential(multiplier=2, min=2, max=60)


def _rate_limit_wait(retry_state) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        return min(float(retry_after), 60.0)
    return _BACKOFF(retry_state)


def _on_retry(retry_state) -> None:
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(f"Rate limited. Retrying in {wait:.0f}s (attempt {retry_state.attempt_number})...")


class Agent:
    """Interactive façade over the turn controller: sessions, local commands, rate-limit retries."""

    _LINE_PREFIX = "assistant> "

    def __init__(self, config: AgentConfig):
        self._provider = config.provider
        self._dispatcher = config.dispatcher
        self._system_prompt = config.system_prompt
        self._store = config.session_store
        self._resume_session_id = config.resume_session_id
        self._rate_limit_retries = max(0, config.rate_limit_retries)
        self._observer = config.observer
        self._session: Session | None = None
        self._run_lock = asyncio.Lock()

        self._turn_controller = TurnController(
            self._provider,
            self._dispatcher,
            store=self._store,
            observer=self._observer,
            max_iterations=config.max_iterations,
            streaming_preferred=config.streaming,
        )
        self._session_controller = SessionController(line_prefix=self._LINE_PREFIX)
        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_usage=self._on_usage,
            on_session=self._handle_session_command,
            on_unknown=self._on_unknown_command,
        )

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("Agent session is not initialized; call initialize_session() first")
        return self._session

    @property
    def active_session_id(self) -> str | None:
        return self._session.id if self._session else None

    async def initialize_session(self) -> None:
        if self._store is not None and self._resume_session_id:
            self._session = self._store.open_session(self._resume_session_id)
            logger.info(f"Resumed session {self._session.id} with {len(self._session.messages)} messages")
            return
        self._session = self._new_session()

    async def run(self, user_message: str) -> TurnResult | None:
        """Handle one line of user input; returns None for local commands."""
        async with self._run_lock:
            if await self._command_router.try_handle(user_message):
                return None
            return await self._run_turn(user_message)

    async def _run_turn(self, user_message: str) -> TurnResult:
        session = self.session
        started = False
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RateLimited),
            wait=_rate_limit_wait,
            stop=stop_after_attempt(self._rate_limit_retries + 1),
            before_sleep=_on_retry,
            reraise=True,
        ):
            with attempt:
                if not started:
                    started = True
                    return await self._turn_controller.run_turn(session, user_message)
                return await self._turn_controller.resume_turn(session)

    def _new_session(self, title: str | None = None) -> Session:
        adapter = self._provider.primary
        if self._store is not None:
            session = self._store.create_session(adapter.name, adapter.model, title=title)
        else:
            session = Session(id=str(uuid4()), provider=adapter.name, model=adapter.model)
        if self._system_prompt:
            session.append(Message.system(self._system_prompt))
        return session

    # -- local commands --

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /usage")
        print(f"{self._LINE_PREFIX}- /session")
        if self._store is not None:
            print(f"{self._LINE_PREFIX}- /session list [limit]")
            print(f"{self._LINE_PREFIX}- /session new [title]")
            print(f"{self._LINE_PREFIX}- /session resume <id>")
            print(f"{self._LINE_PREFIX}- /session delete <id>")
        else:
            print(f"{self._LINE_PREFIX}Stored sessions are available when SessionDbPath is set.")

    async def _on_usage(self) -> None:
        print(f"{self._LINE_PREFIX}Usage: {format_usage(self._provider.ledger.read())}")
        detached = self._dispatcher.detached_count
        if detached:
            print(f"{self._LINE_PREFIX}{detached} timed-out tool call(s) still running in the background")

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    async def _handle_session_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) == 1:
            title = ""
            if self._store is not None:
                row = self._store.get_session(self.session.id)
                title = row["title"] if row else ""
            for line in self._session_controller.format_session_summary_lines(self.session, title=title):
                print(line)
            return

        if self._store is None:
            print(f"{self._LINE_PREFIX}Session commands require SessionDbPath to be set")
            return

        action = parts[1]
        try:
            if action == "list":
                await self._list_sessions(parts)
                return
            if action == "new":
                title = command.partition("new")[2].strip() or None
                self._session = self._new_session(title)
                print(
                    f"{self._LINE_PREFIX}Started new session "
                    f"[{self._session_controller.short_id(self._session.id)}] (id={self._session.id})"
                )
                return
            if action == "resume" and len(parts) == 3:
                self._resume(parts[2])
                return
            if action == "delete" and len(parts) == 3:
                self._delete(parts[2])
                return
        except StoreError as ex:
            print(f"{self._LINE_PREFIX}Session store error: {ex}")
            return

        print(
            f"{self._LINE_PREFIX}Usage: /session | /session list [limit] | /session new [title] | "
            "/session resume <id> | /session delete <id>"
        )

    async def _list_sessions(self, parts: list[str]) -> None:
        limit = 20
        if len(parts) >= 3:
            try:
                limit = int(parts[2])
            except ValueError:
                print(f"{self._LINE_PREFIX}Usage: /session list [limit]")
                return
        sessions = self._store.list_sessions(limit=limit)
        if not sessions:
            print(f"{self._LINE_PREFIX}No sessions found.")
            return
        print(f"{self._LINE_PREFIX}Recent sessions:")
        for s in sessions:
            print(self._session_controller.format_session_list_entry(s, active_session_id=self.active_session_id))

    def _resume(self, session_id: str) -> None:
        if self._store.get_session(session_id) is None:
            print(f"{self._LINE_PREFIX}Session not found: {session_id}")
            return
        self._session = self._store.open_session(session_id)
        title = self._store.get_session(session_id)["title"]
        print(f"{self._LINE_PREFIX}Resumed session ({len(self._session.messages)} messages)")
        for line in self._session_controller.format_session_summary_lines(self._session, title=title):
            print(line)

    def _delete(self, session_id: str) -> None:
        if session_id == self.active_session_id:
            print(f"{self._LINE_PREFIX}Cannot delete the active session; start or resume another one first")
            return
        if self._store.delete_session(session_id):
            print(f"{self._LINE_PREFIX}Deleted session {session_id}")
        else:
            print(f"{self._LINE_PREFIX}Session not found: {session_id}")
