from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

from agent_turn_loop.messages import ToolCallRequest

_PATH_ARGUMENT_KEYS = ("path", "file", "directory")


@runtime_checkable
class ToolPolicy(Protocol):
    def allowed(self, request: ToolCallRequest) -> bool: ...

    def describe_denial(self, request: ToolCallRequest) -> str: ...


class AllowAllPolicy:
    def allowed(self, request: ToolCallRequest) -> bool:
        return True

    def describe_denial(self, request: ToolCallRequest) -> str:
        return ""


class ToolNamePolicy:
    def __init__(self, allowed: Iterable[str] | None = None, denied: Iterable[str] = ()):
        self._allowed = set(allowed) if allowed is not None else None
        self._denied = set(denied)

    def allowed(self, request: ToolCallRequest) -> bool:
        if request.name in self._denied:
            return False
        return self._allowed is None or request.name in self._allowed

    def describe_denial(self, request: ToolCallRequest) -> str:
        return f'Tool "{request.name}" is not permitted by the tool policy'


def resolve_in_workspace(workspace: str | Path, path: str) -> Path | None:
    """Resolve ``path`` against the workspace; None when it escapes it."""
    root = Path(workspace).resolve()
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if resolved == root or root in resolved.parents:
        return resolved
    return None


class WorkspacePathPolicy:
    def __init__(self, workspace: str | Path):
        self._workspace = Path(workspace)

    def allowed(self, request: ToolCallRequest) -> bool:
        for key in _PATH_ARGUMENT_KEYS:
            value = request.arguments.get(key)
            if isinstance(value, str) and value and resolve_in_workspace(self._workspace, value) is None:
                return False
        return True

    def describe_denial(self, request: ToolCallRequest) -> str:
        return f"Path argument of {request.name} escapes the workspace {self._workspace}"


class CompositePolicy:
    def __init__(self, *policies: ToolPolicy):
        self._policies = policies

    def allowed(self, request: ToolCallRequest) -> bool:
        return all(p.allowed(request) for p in self._policies)

    def describe_denial(self, request: ToolCallRequest) -> str:
        for policy in self._policies:
            if not policy.allowed(request):
                return policy.describe_denial(request)
        return ""
