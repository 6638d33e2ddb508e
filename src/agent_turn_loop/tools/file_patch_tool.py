from typing import Any

from agent_turn_loop.errors import ToolError
from agent_turn_loop.tools.workspace import require_argument, resolve_workspace_path


class FilePatchTool:
    """Targeted edit: replace one exact occurrence of ``old_string``."""

    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "file_patch"

    @property
    def description(self) -> str:
        return "Apply a targeted edit to a file by replacing an exact string that occurs exactly once."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file, relative to the workspace",
                },
                "old_string": {
                    "type": "string",
                    "description": "Exact text to find (must match exactly once)",
                },
                "new_string": {
                    "type": "string",
                    "description": "Replacement text",
                },
            },
            "required": ["path", "old_string", "new_string"],
        }

    async def execute(self, arguments: dict[str, Any]) -> str:
        path = require_argument(arguments, "path")
        old_string = require_argument(arguments, "old_string")
        new_string = require_argument(arguments, "new_string")
        if not old_string:
            raise ToolError(ToolError.INVALID_ARGUMENTS, "old_string must not be empty")

        file_path = resolve_workspace_path(self._working_directory, path)
        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as ex:
            raise ToolError(ToolError.EXECUTION, f"Cannot read {path}: {ex}") from ex

        occurrences = content.count(old_string)
        if occurrences == 0:
            raise ToolError(ToolError.EXECUTION, f"old_string not found in {path}")
        if occurrences > 1:
            raise ToolError(
                ToolError.EXECUTION,
                f"old_string matches {occurrences} times in {path}; include more context to make it unique",
            )

        try:
            file_path.write_text(content.replace(old_string, new_string, 1), encoding="utf-8")
        except OSError as ex:
            raise ToolError(ToolError.EXECUTION, f"Cannot write {path}: {ex}") from ex

        delta = len(new_string) - len(old_string)
        return f"Patched {path} ({delta:+,} chars)"
