from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

_API_KEY_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

_DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-4o",
    "openrouter": "anthropic/claude-sonnet-4.5",
}


@dataclass
class RuntimeEnv:
    api_keys: dict[str, str] = field(default_factory=dict)

    def api_key_for(self, provider_name: str) -> str:
        return self.api_keys.get(provider_name, "")

    @staticmethod
    def env_var_for(provider_name: str) -> str:
        return _API_KEY_ENV_VARS.get(provider_name, f"{provider_name.upper()}_API_KEY")


@dataclass
class AppConfig:
    provider_name: str
    model: str
    fallback_providers: list[str]
    base_url: str | None
    max_tokens: int
    temperature: float
    max_iterations: int
    tool_timeout_seconds: float
    max_tool_concurrency: int
    max_tool_result_chars: int
    streaming: bool
    working_directory: str | None
    allowed_tools: list[str] | None
    denied_tools: list[str]
    session_db_path: str | None
    resume_session_id: str | None
    max_sessions: int
    session_retention_days: int
    rate_limit_retries: int
    log_level: str
    log_consumers: list | None


def load_json_config(config_path: Path | None = None) -> dict:
    config_path = config_path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_name_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(v).strip() for v in value if str(v).strip()]


def parse_app_config(config: dict) -> AppConfig:
    provider_name = str(config.get("Provider", "anthropic")).strip().lower()
    allowed_tools = config.get("AllowedTools")
    session_db_path = str(config.get("SessionDbPath", ".agent_turn_loop/sessions.db") or "").strip()
    return AppConfig(
        provider_name=provider_name,
        model=config.get("Model") or default_model(provider_name),
        fallback_providers=[p.lower() for p in _to_name_list(config.get("FallbackProviders"))],
        base_url=str(config.get("BaseUrl", "")).strip() or None,
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        max_iterations=int(config.get("MaxIterations", 10)),
        tool_timeout_seconds=float(config.get("ToolTimeoutSeconds", 60)),
        max_tool_concurrency=int(config.get("MaxToolConcurrency", 8)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        streaming=_to_bool(config.get("Streaming", True), default=True),
        working_directory=config.get("WorkingDirectory"),
        allowed_tools=_to_name_list(allowed_tools) if allowed_tools is not None else None,
        denied_tools=_to_name_list(config.get("DeniedTools")),
        session_db_path=session_db_path or None,
        resume_session_id=str(config.get("ResumeSessionId", "")).strip() or None,
        max_sessions=int(config.get("MaxSessions", 200)),
        session_retention_days=int(config.get("SessionRetentionDays", 30)),
        rate_limit_retries=int(config.get("RateLimitRetries", 3)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_names: list[str]) -> RuntimeEnv:
    return RuntimeEnv(
        api_keys={name: os.environ.get(RuntimeEnv.env_var_for(name), "") for name in provider_names},
    )


def default_model(provider_name: str) -> str:
    return _DEFAULT_MODELS.get(provider_name, "")
