import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from agent_turn_loop.errors import ToolError
from agent_turn_loop.tools.workspace import require_argument, resolve_workspace_path, workspace_root

MAX_MATCHES = 100
_MAX_LINE_CHARS = 300
_SKIPPED_DIRECTORIES = {".git", "node_modules", "__pycache__", ".venv", "venv", "target"}


class SearchFilesTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "search_files"

    @property
    def description(self) -> str:
        return "Search for a regex pattern across files in the workspace."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Regex pattern to search for",
                },
                "path": {
                    "type": "string",
                    "description": "Subdirectory to search in (default: entire workspace)",
                },
                "glob": {
                    "type": "string",
                    "description": "File name filter, e.g. '*.py'",
                },
            },
            "required": ["pattern"],
        }

    def execute(self, arguments: dict[str, Any]) -> str:
        # Synchronous on purpose: the dispatcher runs it in a worker thread.
        pattern = require_argument(arguments, "pattern")
        glob_filter = arguments.get("glob") or None
        try:
            regex = re.compile(pattern)
        except re.error as ex:
            raise ToolError(ToolError.INVALID_ARGUMENTS, f"Invalid regex: {ex}") from ex

        root = workspace_root(self._working_directory).resolve()
        search_dir = resolve_workspace_path(self._working_directory, arguments.get("path") or ".")
        if not search_dir.is_dir():
            raise ToolError(ToolError.EXECUTION, f"Not a directory: {arguments.get('path')}")

        matches: list[str] = []
        for file_path in self._iter_files(search_dir, glob_filter):
            try:
                with open(file_path, encoding="utf-8") as f:
                    for line_number, line in enumerate(f, start=1):
                        if regex.search(line):
                            text = line.rstrip("\n")[:_MAX_LINE_CHARS]
                            matches.append(f"{file_path.relative_to(root)}:{line_number}: {text}")
                            if len(matches) >= MAX_MATCHES:
                                break
            except (OSError, UnicodeDecodeError):
                continue
            if len(matches) >= MAX_MATCHES:
                break

        if not matches:
            return "No matches found."
        truncated = f"\n... truncated at {MAX_MATCHES} matches" if len(matches) >= MAX_MATCHES else ""
        return f"{len(matches)} matches:{truncated}\n" + "\n".join(matches)

    @staticmethod
    def _iter_files(search_dir: Path, glob_filter: str | None):
        for dirpath, dirnames, filenames in os.walk(search_dir):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIPPED_DIRECTORIES)
            for filename in sorted(filenames):
                if glob_filter and not fnmatch.fnmatch(filename, glob_filter):
                    continue
                yield Path(dirpath) / filename
