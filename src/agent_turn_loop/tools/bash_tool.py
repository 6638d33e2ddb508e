import asyncio
import platform
import subprocess
from typing import Any

from agent_turn_loop.errors import ToolError
from agent_turn_loop.tools.workspace import require_argument

_IS_WINDOWS = platform.system() == "Windows"


class BashTool:
    def __init__(self, working_directory: str | None = None, timeout_seconds: float = 30.0):
        self._cwd = working_directory
        self._timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return "Execute a shell command in the workspace and return its combined stdout and stderr."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
            },
            "required": ["command"],
        }

    async def execute(self, arguments: dict[str, Any]) -> str:
        command = require_argument(arguments, "command")
        shell_command = f"cmd.exe /c {command}" if _IS_WINDOWS else command
        extra: dict[str, Any] = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP} if _IS_WINDOWS else {}

        try:
            proc = await asyncio.create_subprocess_shell(
                shell_command,
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                **extra,
            )
        except OSError as ex:
            raise ToolError(ToolError.EXECUTION, f"Cannot start command: {ex}") from ex

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_seconds)
        except (asyncio.TimeoutError, asyncio.CancelledError) as ex:
            proc.kill()
            try:
                await asyncio.wait_for(proc.communicate(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError):
                pass
            if isinstance(ex, asyncio.CancelledError):
                raise
            raise ToolError(ToolError.TIMEOUT, f"Command timed out after {self._timeout_seconds:g}s") from ex

        output = stdout.decode(errors="replace") + stderr.decode(errors="replace")
        if proc.returncode != 0:
            return f"{output}\n[exit code {proc.returncode}]"
        return output.rstrip()
