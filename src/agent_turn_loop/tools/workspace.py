from pathlib import Path

from agent_turn_loop.errors import ToolError
from agent_turn_loop.policy import resolve_in_workspace


def workspace_root(working_directory: str | None) -> Path:
    return Path(working_directory) if working_directory else Path.cwd()


def resolve_workspace_path(working_directory: str | None, path: str) -> Path:
    """Resolve a tool path argument; paths outside the workspace are refused."""
    if not path:
        raise ToolError(ToolError.INVALID_ARGUMENTS, "Missing 'path' argument")
    resolved = resolve_in_workspace(workspace_root(working_directory), path)
    if resolved is None:
        raise ToolError(ToolError.POLICY, f"Path escapes the workspace: {path}")
    return resolved


def require_argument(arguments: dict, key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str):
        raise ToolError(ToolError.INVALID_ARGUMENTS, f"Missing '{key}' argument")
    return value
