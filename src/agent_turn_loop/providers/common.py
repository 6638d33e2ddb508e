from __future__ import annotations

import json
from collections.abc import Sequence

from loguru import logger

from agent_turn_loop.errors import AdapterError, AdapterUnreachable, RateLimited
from agent_turn_loop.tool import Tool


def tool_definitions(tools: Sequence[Tool]) -> list[dict]:
    """Provider-neutral tool schema; each adapter reshapes it for its wire format."""
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def parse_tool_arguments(raw: str | dict | None) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {raw[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _retry_after(ex: Exception) -> float | None:
    response = getattr(ex, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def map_sdk_error(
    ex: Exception,
    *,
    adapter: str,
    rate_limit_types: tuple[type[Exception], ...],
    unreachable_types: tuple[type[Exception], ...],
) -> AdapterError:
    if isinstance(ex, rate_limit_types):
        return RateLimited(f"{adapter} rate limited the request: {ex}", adapter=adapter, retry_after=_retry_after(ex))
    if isinstance(ex, unreachable_types):
        return AdapterUnreachable(f"{adapter} unreachable ({type(ex).__name__}): {ex}", adapter=adapter)
    return AdapterError(f"{adapter} request failed ({type(ex).__name__}): {ex}", adapter=adapter)
