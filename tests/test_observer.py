import unittest

from agent_turn_loop.display import ConsoleDisplay
from agent_turn_loop.messages import StreamChunk
from agent_turn_loop.observer import NullObserver, TurnObserver, notify
from tests.fakes import FailingObserver, RecordingObserver


class ObserverTests(unittest.TestCase):
    def test_sinks_satisfy_protocol(self) -> None:
        self.assertIsInstance(NullObserver(), TurnObserver)
        self.assertIsInstance(ConsoleDisplay(show_spinner=False), TurnObserver)
        self.assertIsInstance(RecordingObserver(), TurnObserver)

    def test_notify_delivers_event(self) -> None:
        observer = RecordingObserver()
        chunk = StreamChunk(delta_text="hi")
        notify(observer, "on_chunk", chunk)
        self.assertEqual([chunk], observer.of("chunk"))

    def test_notify_tolerates_missing_observer_and_method(self) -> None:
        notify(None, "on_chunk", StreamChunk())
        notify(object(), "on_chunk", StreamChunk())
        notify(NullObserver(), "on_state", "final")

    def test_notify_swallows_sink_failures(self) -> None:
        notify(FailingObserver(), "on_usage", None)


if __name__ == "__main__":
    unittest.main()
