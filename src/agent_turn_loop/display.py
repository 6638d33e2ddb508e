import sys
import threading

from agent_turn_loop.messages import StreamChunk, ToolCallRequest, ToolResult
from agent_turn_loop.usage import UsageSnapshot

_SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


class Spinner:
    """Thread-based spinner that renders on the current line using \\r."""

    def __init__(self, prefix: str = "", label: str = " Thinking..."):
        self._prefix = prefix
        self._label = label
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._frame_width = 1 + len(label)

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._stop.is_set() or self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        # Overwrite the frame, then leave the cursor right after the prefix
        clear = self._prefix + " " * self._frame_width
        sys.stdout.write("\r" + clear + "\r" + self._prefix)
        sys.stdout.flush()

    def _run(self) -> None:
        i = 0
        try:
            while not self._stop.is_set():
                frame = _SPINNER_FRAMES[i % len(_SPINNER_FRAMES)] + self._label
                sys.stdout.write("\r" + self._prefix + frame)
                sys.stdout.flush()
                self._stop.wait(0.08)
                i += 1
        except (UnicodeEncodeError, OSError):
            pass  # terminal cannot render the frames


class ConsoleDisplay:
    """Terminal observer: spinner while waiting, streamed text, tool progress."""

    def __init__(self, line_prefix: str = "assistant> ", *, show_spinner: bool = True):
        self._line_prefix = line_prefix
        self._show_spinner = show_spinner and sys.stdout.isatty()
        self._spinner: Spinner | None = None
        self._at_line_start = True
        self.last_usage: UsageSnapshot | None = None

    def on_state(self, state: str) -> None:
        if state == "awaiting_model":
            self._start_spinner()
        elif state in ("final", "iteration_limit_reached"):
            self._stop_spinner()

    def on_chunk(self, chunk: StreamChunk) -> None:
        self._stop_spinner()
        if not chunk.delta_text:
            return
        if self._at_line_start:
            sys.stdout.write(self._line_prefix)
            self._at_line_start = False
        sys.stdout.write(chunk.delta_text)
        sys.stdout.flush()

    def on_usage(self, snapshot: UsageSnapshot) -> None:
        self.last_usage = snapshot

    def on_tool_started(self, request: ToolCallRequest) -> None:
        self._stop_spinner()
        self._end_line()
        print(f"{self._line_prefix}[tool] {request.name} ...", flush=True)

    def on_tool_completed(self, result: ToolResult) -> None:
        status = f"failed ({result.error_kind})" if result.is_error else "done"
        print(f"{self._line_prefix}[tool] {result.id} {status} in {result.duration:.1f}s", flush=True)

    def finish(self) -> None:
        self._stop_spinner()
        self._end_line()

    def _start_spinner(self) -> None:
        if not self._show_spinner:
            return
        self._stop_spinner()
        self._end_line()
        self._spinner = Spinner(prefix=self._line_prefix)
        self._spinner.start()

    def _stop_spinner(self) -> None:
        if self._spinner is None:
            return
        self._spinner.stop()
        self._spinner = None
        # Spinner.stop leaves the prefix printed
        self._at_line_start = False

    def _end_line(self) -> None:
        if not self._at_line_start:
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._at_line_start = True
