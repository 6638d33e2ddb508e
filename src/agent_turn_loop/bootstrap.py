from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from agent_turn_loop.agent import Agent
from agent_turn_loop.agent_config import AgentConfig
from agent_turn_loop.app_config import AppConfig, RuntimeEnv, default_model
from agent_turn_loop.display import ConsoleDisplay
from agent_turn_loop.logging_config import setup_logging
from agent_turn_loop.policy import CompositePolicy, ToolNamePolicy, WorkspacePathPolicy
from agent_turn_loop.provider import ProviderAdapter, create_adapter
from agent_turn_loop.reliable_provider import ReliableProvider
from agent_turn_loop.store.sqlite_store import SqliteSessionStore
from agent_turn_loop.system_prompt import build_system_prompt
from agent_turn_loop.tool import Tool
from agent_turn_loop.tool_dispatcher import ToolDispatcher
from agent_turn_loop.tool_registry import get_all
from agent_turn_loop.usage import UsageLedger


@dataclass
class AppRuntime:
    agent: Agent
    display: ConsoleDisplay
    session_store: SqliteSessionStore | None
    adapters: list[ProviderAdapter]
    tools: list[Tool]
    log_descriptions: list[str]


def build_adapters(app: AppConfig, env: RuntimeEnv, tools: list[Tool]) -> list[ProviderAdapter]:
    """Primary adapter first, then every configured fallback that has an API key."""
    primary_key = env.api_key_for(app.provider_name)
    if not primary_key:
        raise ValueError(f"{RuntimeEnv.env_var_for(app.provider_name)} environment variable is required.")

    common = dict(max_tokens=app.max_tokens, temperature=app.temperature, tools=tools)
    adapters = [create_adapter(app.provider_name, primary_key, model=app.model, base_url=app.base_url, **common)]
    for name in app.fallback_providers:
        if name == app.provider_name:
            continue
        api_key = env.api_key_for(name)
        if not api_key:
            logger.warning(f"Skipping fallback provider {name}: {RuntimeEnv.env_var_for(name)} is not set")
            continue
        adapters.append(create_adapter(name, api_key, model=default_model(name), **common))
    return adapters


def open_session_store(app: AppConfig) -> SqliteSessionStore | None:
    if not app.session_db_path:
        return None
    db_path = Path(app.session_db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    store = SqliteSessionStore(str(db_path))
    store.prune(max_sessions=app.max_sessions, retention_days=app.session_retention_days)
    return store


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    tools = get_all(app.working_directory, shell_timeout_seconds=app.tool_timeout_seconds)
    adapters = build_adapters(app, env, tools)
    workspace = app.working_directory or str(Path.cwd())

    display = ConsoleDisplay()
    dispatcher = ToolDispatcher(
        tools,
        policy=CompositePolicy(
            ToolNamePolicy(allowed=app.allowed_tools, denied=app.denied_tools),
            WorkspacePathPolicy(workspace),
        ),
        timeout_seconds=app.tool_timeout_seconds,
        max_concurrency=app.max_tool_concurrency,
        max_result_chars=app.max_tool_result_chars,
        observer=display,
    )
    provider = ReliableProvider(adapters, UsageLedger(), observer=display)
    session_store = open_session_store(app)

    agent = Agent(
        AgentConfig(
            provider=provider,
            dispatcher=dispatcher,
            system_prompt=build_system_prompt(app.working_directory, [t.name for t in tools]),
            session_store=session_store,
            resume_session_id=app.resume_session_id,
            max_iterations=app.max_iterations,
            streaming=app.streaming,
            rate_limit_retries=app.rate_limit_retries,
            observer=display,
        )
    )
    await agent.initialize_session()

    return AppRuntime(
        agent=agent,
        display=display,
        session_store=session_store,
        adapters=adapters,
        tools=tools,
        log_descriptions=log_descriptions,
    )
