import asyncio
import io
import os
import platform
import signal
import unittest
from contextlib import redirect_stdout
from types import SimpleNamespace

from agent_turn_loop.__main__ import report_turn, run_cancellable_turn
from agent_turn_loop.display import ConsoleDisplay
from agent_turn_loop.errors import SessionPersistError, StoreError
from agent_turn_loop.messages import Message, Session
from agent_turn_loop.turn_controller import TurnResult, TurnState


class _SlowAgent:
    def __init__(self, delay: float, result=None):
        self.delay = delay
        self.result = result
        self.cancelled = False

    async def run(self, user_input: str):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return self.result


def _result(**overrides) -> TurnResult:
    fields = dict(
        session=Session(id="s1", provider="p", model="m"),
        message=Message.assistant("answer"),
        state=TurnState.FINAL,
        iterations=1,
        max_iterations=10,
    )
    fields.update(overrides)
    return TurnResult(**fields)


class RunCancellableTurnTests(unittest.TestCase):
    def test_returns_turn_result(self) -> None:
        expected = SimpleNamespace(state=TurnState.FINAL)
        result = asyncio.run(run_cancellable_turn(_SlowAgent(0, expected), ConsoleDisplay(show_spinner=False), "hi"))
        self.assertIs(expected, result)

    @unittest.skipIf(platform.system() == "Windows", "loop signal handlers are POSIX only")
    def test_sigint_cancels_only_the_turn(self) -> None:
        agent = _SlowAgent(5)

        async def scenario():
            asyncio.get_running_loop().call_later(0.05, os.kill, os.getpid(), signal.SIGINT)
            return await run_cancellable_turn(agent, ConsoleDisplay(show_spinner=False), "hi")

        buf = io.StringIO()
        with redirect_stdout(buf):
            result = asyncio.run(scenario())

        self.assertIsNone(result)
        self.assertTrue(agent.cancelled)
        self.assertIn("[interrupted]", buf.getvalue())


class ReportTurnTests(unittest.TestCase):
    def _report(self, result) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            report_turn(result)
        return buf.getvalue()

    def test_completed_turn_prints_nothing_extra(self) -> None:
        self.assertEqual("", self._report(_result()))
        self.assertEqual("", self._report(None))

    def test_iteration_limit_notice(self) -> None:
        output = self._report(_result(state=TurnState.ITERATION_LIMIT_REACHED, message=Message.assistant("Stopped after 10 iterations")))
        self.assertIn("Stopped after 10 iterations", output)

    def test_interrupted_and_persist_warnings(self) -> None:
        error = SessionPersistError("s1", StoreError("disk full"))
        output = self._report(_result(stream_interrupted=True, persist_error=error))
        self.assertIn("response interrupted", output)
        self.assertIn("[warning:", output)


if __name__ == "__main__":
    unittest.main()
