from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from agent_turn_loop.tool import Tool
from agent_turn_loop.tools.bash_tool import BashTool
from agent_turn_loop.tools.file_patch_tool import FilePatchTool
from agent_turn_loop.tools.read_file_tool import ReadFileTool
from agent_turn_loop.tools.search_files_tool import SearchFilesTool
from agent_turn_loop.tools.write_file_tool import WriteFileTool


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _workspace_tools(ctx: dict) -> list[Tool]:
    working_directory = ctx["working_directory"]
    return [
        ReadFileTool(working_directory),
        WriteFileTool(working_directory),
        FilePatchTool(working_directory),
        SearchFilesTool(working_directory),
    ]


def _shell_enabled(ctx: dict) -> bool:
    return ctx.get("enable_shell", True)


def _shell_tools(ctx: dict) -> list[Tool]:
    return [BashTool(ctx["working_directory"], timeout_seconds=ctx["shell_timeout_seconds"])]


def _web_enabled(ctx: dict) -> bool:
    return ctx.get("enable_web", True)


def _web_tools(_: dict) -> list[Tool]:
    from agent_turn_loop.tools.web.web_fetch_tool import WebFetchTool

    return [WebFetchTool()]


_GROUPS = [
    ToolGroup(enabled=_always, build=_workspace_tools),
    ToolGroup(enabled=_shell_enabled, build=_shell_tools),
    ToolGroup(enabled=_web_enabled, build=_web_tools),
]


def get_all(
    working_directory: str | None = None,
    enable_shell: bool = True,
    enable_web: bool = True,
    shell_timeout_seconds: float = 30.0,
) -> list[Tool]:
    ctx = {
        "working_directory": working_directory,
        "enable_shell": enable_shell,
        "enable_web": enable_web,
        "shell_timeout_seconds": shell_timeout_seconds,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools
