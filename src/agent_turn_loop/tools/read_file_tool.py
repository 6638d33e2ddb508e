import os
from typing import Any

from agent_turn_loop.errors import ToolError
from agent_turn_loop.tools.workspace import require_argument, resolve_workspace_path

_MAX_FILE_BYTES = 5_000_000


class ReadFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a workspace file as text. Supports plain text files and .docx documents."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file, relative to the workspace",
                },
            },
            "required": ["path"],
        }

    async def execute(self, arguments: dict[str, Any]) -> str:
        path = require_argument(arguments, "path")
        file_path = resolve_workspace_path(self._working_directory, path)
        if not file_path.is_file():
            raise ToolError(ToolError.EXECUTION, f"File not found: {path}")
        if file_path.stat().st_size > _MAX_FILE_BYTES:
            raise ToolError(ToolError.EXECUTION, f"File too large to read ({file_path.stat().st_size:,} bytes): {path}")

        try:
            if file_path.suffix.lower() == ".docx":
                return self._extract_docx_text(str(file_path))
            return file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as ex:
            raise ToolError(ToolError.EXECUTION, f"Error reading file: {ex}") from ex

    @staticmethod
    def _extract_docx_text(file_path: str) -> str:
        from docx import Document

        doc = Document(file_path)
        return os.linesep.join(p.text for p in doc.paragraphs)
