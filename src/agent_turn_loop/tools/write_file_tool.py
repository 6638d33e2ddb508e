from typing import Any

from agent_turn_loop.errors import ToolError
from agent_turn_loop.tools.workspace import require_argument, resolve_workspace_path


class WriteFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a workspace file, creating it (and parent directories) if needed."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file, relative to the workspace",
                },
                "content": {
                    "type": "string",
                    "description": "The full content to write",
                },
            },
            "required": ["path", "content"],
        }

    async def execute(self, arguments: dict[str, Any]) -> str:
        path = require_argument(arguments, "path")
        content = require_argument(arguments, "content")
        file_path = resolve_workspace_path(self._working_directory, path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except OSError as ex:
            raise ToolError(ToolError.EXECUTION, f"Error writing file: {ex}") from ex
        return f"Wrote {len(content):,} chars to {path}"
