import asyncio
import unittest

from agent_turn_loop.errors import (
    ProviderUnavailable,
    RateLimited,
    SessionPersistError,
    StoreError,
    ToolError,
    ToolExecutionLimitExceeded,
    AdapterUnreachable,
)
from agent_turn_loop.messages import Message, Role, Session, ToolCallRequest
from agent_turn_loop.reliable_provider import ReliableProvider
from agent_turn_loop.store.base import InMemorySessionStore
from agent_turn_loop.tool_dispatcher import ToolDispatcher
from agent_turn_loop.turn_controller import INTERRUPTED_MARKER, TurnController, TurnState
from agent_turn_loop.usage import UsageLedger
from tests.fakes import EchoTool, FailingObserver, RecordingObserver, ScriptedAdapter


class _BrokenStore(InMemorySessionStore):
    def __init__(self, fail: bool = True) -> None:
        super().__init__()
        self.fail = fail

    def append(self, session_id, message) -> None:
        if self.fail:
            raise StoreError("database is locked")
        super().append(session_id, message)


def _session() -> Session:
    return Session(id="s1", provider="scripted", model="test-model", messages=[Message.system("be brief")], persisted_count=0)


def _controller(adapter, tools=(), *, store=None, observer=None, max_iterations=10, timeout=5.0):
    provider = ReliableProvider(adapter, UsageLedger(), observer=observer)
    dispatcher = ToolDispatcher(list(tools), timeout_seconds=timeout, observer=observer)
    return TurnController(provider, dispatcher, store=store, observer=observer, max_iterations=max_iterations)


def _calls(*specs: tuple[str, str]) -> list[ToolCallRequest]:
    return [ToolCallRequest(id=call_id, name=name, arguments={"value": call_id}) for call_id, name in specs]


class TurnControllerTests(unittest.TestCase):
    def test_answer_without_tool_calls_takes_one_round_trip(self) -> None:
        adapter = ScriptedAdapter([Message.assistant("Hi!")])
        session = _session()

        result = asyncio.run(_controller(adapter).run_turn(session, "hello"))

        self.assertEqual(TurnState.FINAL, result.state)
        self.assertTrue(result.completed)
        self.assertEqual(1, result.iterations)
        self.assertEqual(1, adapter.stream_calls)
        self.assertEqual("Hi!", result.message.content)
        self.assertEqual([Role.SYSTEM, Role.USER, Role.ASSISTANT], [m.role for m in session.messages])
        result.raise_for_status()

    def test_tool_results_are_appended_in_request_order(self) -> None:
        calls = _calls(("c1", "slow"), ("c2", "fast"), ("c3", "slow"))
        adapter = ScriptedAdapter([Message.assistant("Working on it", calls), Message.assistant("All done")])
        tools = [EchoTool("slow", delay=0.05), EchoTool("fast")]
        session = _session()

        result = asyncio.run(_controller(adapter, tools).run_turn(session, "do things"))

        self.assertEqual(2, result.iterations)
        roles = [m.role for m in session.messages]
        self.assertEqual(
            [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.TOOL, Role.ASSISTANT],
            roles,
        )
        tool_messages = session.messages[3:6]
        self.assertEqual(["c1", "c2", "c3"], [m.tool_call_id for m in tool_messages])
        self.assertEqual('slow:{"value": "c1"}', tool_messages[0].content)
        # The second round-trip saw the tool results.
        self.assertEqual(6, len(adapter.histories[1]))

    def test_every_tool_call_gets_exactly_one_result_even_when_tools_fail(self) -> None:
        calls = _calls(("a", "ok"), ("b", "missing"), ("c", "boom"))
        adapter = ScriptedAdapter([Message.assistant("", calls), Message.assistant("done")])
        tools = [EchoTool("ok"), EchoTool("boom", error=ToolError(ToolError.EXECUTION, "exploded"))]
        session = _session()

        asyncio.run(_controller(adapter, tools).run_turn(session, "go"))

        tool_messages = [m for m in session.messages if m.role is Role.TOOL]
        self.assertEqual(["a", "b", "c"], [m.tool_call_id for m in tool_messages])
        self.assertFalse(tool_messages[0].content.startswith("Error:"))
        self.assertTrue(tool_messages[1].content.startswith("Error:"))
        self.assertEqual("Error: exploded", tool_messages[2].content)

    def test_model_that_always_calls_tools_stops_at_iteration_limit(self) -> None:
        adapter = ScriptedAdapter(default_reply=Message.assistant("Still digging", _calls(("x", "echo"))))
        session = _session()

        result = asyncio.run(_controller(adapter, [EchoTool()], max_iterations=3).run_turn(session, "loop forever"))

        self.assertEqual(TurnState.ITERATION_LIMIT_REACHED, result.state)
        self.assertFalse(result.completed)
        self.assertEqual(3, result.iterations)
        self.assertEqual(3, adapter.stream_calls)
        self.assertIs(session.messages[-1], result.message)
        self.assertTrue(result.message.content.startswith("Still digging"))
        self.assertIn("limit of 3 model round-trips", result.message.content)
        self.assertFalse(result.message.has_tool_calls)
        with self.assertRaises(ToolExecutionLimitExceeded) as ctx:
            result.raise_for_status()
        self.assertEqual(3, ctx.exception.max_iterations)

    def test_interrupted_stream_is_kept_as_the_answer(self) -> None:
        adapter = ScriptedAdapter([Message.assistant("The answer is forty-two")], fail_after_chunks=3)
        session = _session()

        result = asyncio.run(_controller(adapter).run_turn(session, "question"))

        self.assertTrue(result.stream_interrupted)
        self.assertEqual(TurnState.FINAL, result.state)
        self.assertEqual("The answer", result.message.content[:10])
        self.assertEqual("The answer i", session.messages[-1].content)
        self.assertEqual(0, adapter.send_calls)

    def test_non_streaming_adapter_drives_the_loop(self) -> None:
        adapter = ScriptedAdapter(
            [Message.assistant("", _calls(("t", "echo"))), Message.assistant("finished")],
            streaming=False,
        )
        session = _session()

        result = asyncio.run(_controller(adapter, [EchoTool()]).run_turn(session, "hi"))

        self.assertEqual("finished", result.message.content)
        self.assertEqual(2, adapter.send_calls)

    def test_messages_are_persisted_at_turn_boundary(self) -> None:
        store = InMemorySessionStore()
        adapter = ScriptedAdapter([Message.assistant("", _calls(("t", "echo"))), Message.assistant("ok")])
        session = _session()

        asyncio.run(_controller(adapter, [EchoTool()], store=store).run_turn(session, "hi"))

        self.assertEqual(session.messages, store.load("s1"))
        self.assertEqual(len(session.messages), session.persisted_count)

    def test_persist_failure_is_reported_without_losing_the_answer(self) -> None:
        store = _BrokenStore()
        adapter = ScriptedAdapter([Message.assistant("kept in memory")])
        session = _session()

        result = asyncio.run(_controller(adapter, store=store).run_turn(session, "hi"))

        self.assertEqual("kept in memory", result.message.content)
        self.assertIsInstance(result.persist_error, SessionPersistError)
        self.assertEqual("s1", result.persist_error.session_id)
        self.assertEqual(0, session.persisted_count)
        with self.assertRaises(SessionPersistError):
            result.raise_for_status()

    def test_unpersisted_tail_is_retried_next_turn(self) -> None:
        store = _BrokenStore()
        adapter = ScriptedAdapter([Message.assistant("first"), Message.assistant("second")])
        controller = _controller(adapter, store=store)
        session = _session()

        asyncio.run(controller.run_turn(session, "one"))
        store.fail = False
        result = asyncio.run(controller.run_turn(session, "two"))

        self.assertIsNone(result.persist_error)
        self.assertEqual(session.messages, store.load("s1"))

    def test_provider_unavailable_propagates_after_persisting_user_message(self) -> None:
        store = InMemorySessionStore()
        down = AdapterUnreachable("connection refused")
        adapter = ScriptedAdapter(stream_error=down, send_error=down)
        session = _session()

        with self.assertRaises(ProviderUnavailable):
            asyncio.run(_controller(adapter, store=store).run_turn(session, "anyone there?"))

        self.assertEqual(Role.USER, session.messages[-1].role)
        self.assertEqual(session.messages, store.load("s1"))

    def test_rate_limit_propagates_and_turn_can_resume(self) -> None:
        adapter = ScriptedAdapter([Message.assistant("back again")], stream_error=RateLimited("slow down"))
        controller = _controller(adapter)
        session = _session()

        with self.assertRaises(RateLimited):
            asyncio.run(controller.run_turn(session, "hi"))
        adapter.stream_error = None
        result = asyncio.run(controller.resume_turn(session))

        self.assertEqual("back again", result.message.content)
        self.assertEqual(1, sum(1 for m in session.messages if m.role is Role.USER))

    def test_resume_requires_pending_user_or_tool_message(self) -> None:
        session = _session()
        session.append(Message.user("hi"))
        session.append(Message.assistant("hello"))
        with self.assertRaises(ValueError):
            asyncio.run(_controller(ScriptedAdapter()).resume_turn(session))

    def test_cancel_during_stream_keeps_partial_text_with_marker(self) -> None:
        adapter = ScriptedAdapter([Message.assistant("a long and slow answer")], chunk_size=2, chunk_delay=0.05)
        store = InMemorySessionStore()
        controller = _controller(adapter, store=store)
        session = _session()

        async def scenario():
            task = asyncio.ensure_future(controller.run_turn(session, "talk"))
            await asyncio.sleep(0.2)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        last = session.messages[-1]
        self.assertEqual(Role.ASSISTANT, last.role)
        self.assertTrue(last.content.endswith(INTERRUPTED_MARKER))
        self.assertTrue("a long and slow answer".startswith(last.content[: -len(INTERRUPTED_MARKER)]))
        self.assertEqual(session.messages, store.load("s1"))

    def test_cancel_during_dispatch_answers_every_call(self) -> None:
        adapter = ScriptedAdapter([Message.assistant("", _calls(("a", "hang"), ("b", "hang")))])
        session = _session()
        controller = _controller(adapter, [EchoTool("hang", delay=10)])

        async def scenario():
            task = asyncio.ensure_future(controller.run_turn(session, "go"))
            await asyncio.sleep(0.1)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        tool_messages = [m for m in session.messages if m.role is Role.TOOL]
        self.assertEqual(["a", "b"], [m.tool_call_id for m in tool_messages])
        self.assertTrue(all("interrupted" in m.content for m in tool_messages))

    def test_observer_sees_states_in_order(self) -> None:
        observer = RecordingObserver()
        adapter = ScriptedAdapter([Message.assistant("", _calls(("t", "echo"))), Message.assistant("ok")])

        asyncio.run(_controller(adapter, [EchoTool()], observer=observer).run_turn(_session(), "hi"))

        self.assertEqual(
            ["awaiting_model", "tools_requested", "dispatching_tools", "awaiting_model", "final"],
            observer.of("state"),
        )
        self.assertEqual(2, len(observer.of("usage")))

    def test_failing_observer_does_not_change_the_outcome(self) -> None:
        calls = _calls(("t", "echo"))
        quiet = _session()
        noisy = _session()

        quiet_result = asyncio.run(
            _controller(ScriptedAdapter([Message.assistant("", calls), Message.assistant("ok")]), [EchoTool()]).run_turn(quiet, "hi")
        )
        noisy_result = asyncio.run(
            _controller(
                ScriptedAdapter([Message.assistant("", calls), Message.assistant("ok")]),
                [EchoTool()],
                observer=FailingObserver(),
            ).run_turn(noisy, "hi")
        )

        self.assertEqual(quiet_result.message, noisy_result.message)
        self.assertEqual([m.content for m in quiet.messages], [m.content for m in noisy.messages])

    def test_max_iterations_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            _controller(ScriptedAdapter(), max_iterations=0)


if __name__ == "__main__":
    unittest.main()
