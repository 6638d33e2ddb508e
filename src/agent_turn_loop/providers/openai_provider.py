from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence

import openai
from loguru import logger

from agent_turn_loop.messages import Message, Role, StreamChunk, ToolCallRequest
from agent_turn_loop.provider import BaseAdapter, ProviderReply
from agent_turn_loop.providers.common import map_sdk_error, parse_tool_arguments, tool_definitions
from agent_turn_loop.tool import Tool
from agent_turn_loop.usage import request_usage

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_RATE_LIMIT_ERRORS = (openai.RateLimitError,)
_UNREACHABLE_ERRORS = (
    openai.APIConnectionError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
)


def _to_openai_messages(history: Sequence[Message]) -> list[dict]:
    out: list[dict] = []
    for msg in history:
        if msg.role is Role.ASSISTANT:
            oai_msg: dict = {"role": "assistant", "content": msg.content or None}
            if msg.tool_calls:
                oai_msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in msg.tool_calls
                ]
            elif oai_msg["content"] is None:
                oai_msg["content"] = ""
            out.append(oai_msg)
        elif msg.role is Role.TOOL:
            out.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
        else:
            out.append({"role": msg.role.value, "content": msg.content})
    return out


def _to_openai_tools(tools: Sequence[Tool]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tool_definitions(tools)
    ]


class _ToolCallAccumulator:
    """Reassembles tool calls whose id, name and argument fragments arrive by index."""

    def __init__(self) -> None:
        self._calls: dict[int, dict] = {}

    def add(self, tc_delta) -> None:
        acc = self._calls.setdefault(tc_delta.index, {"id": "", "name": "", "arguments_parts": []})
        if tc_delta.id:
            acc["id"] = tc_delta.id
        function = tc_delta.function
        if function:
            if function.name:
                acc["name"] = function.name
            if function.arguments:
                acc["arguments_parts"].append(function.arguments)

    def build(self) -> tuple[ToolCallRequest, ...]:
        return tuple(
            ToolCallRequest(
                id=acc["id"],
                name=acc["name"],
                arguments=parse_tool_arguments("".join(acc["arguments_parts"])),
            )
            for _, acc in sorted(self._calls.items())
        )


class OpenAIAdapter(BaseAdapter):
    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        max_tokens: int = 8192,
        temperature: float = 1.0,
        tools: Sequence[Tool] = (),
        base_url: str | None = None,
        name: str = "openai",
    ):
        super().__init__(name=name, model=model, max_tokens=max_tokens, temperature=temperature, tools=tools)
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    def _request_kwargs(self, history: Sequence[Message]) -> dict:
        kwargs: dict = dict(
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            messages=_to_openai_messages(history),
        )
        if self._tools:
            kwargs["tools"] = _to_openai_tools(self._tools)
        return kwargs

    def _map_error(self, ex: Exception):
        return map_sdk_error(
            ex,
            adapter=self._name,
            rate_limit_types=_RATE_LIMIT_ERRORS,
            unreachable_types=_UNREACHABLE_ERRORS,
        )

    async def send(self, history: Sequence[Message]) -> ProviderReply:
        kwargs = self._request_kwargs(history)
        logger.debug(f"API request: model={self._model}, messages={len(kwargs['messages'])}, stream=False")
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as ex:
            raise self._map_error(ex) from ex

        choice = response.choices[0]
        tool_calls = tuple(
            ToolCallRequest(
                id=tc.id,
                name=tc.function.name,
                arguments=parse_tool_arguments(tc.function.arguments),
            )
            for tc in (choice.message.tool_calls or [])
        )
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        logger.debug(
            f"API response: finish_reason={choice.finish_reason}, "
            f"prompt_tokens={prompt_tokens}, completion_tokens={completion_tokens}"
        )
        return ProviderReply(
            message=Message.assistant(choice.message.content or "", tool_calls),
            usage=request_usage(self._model, prompt_tokens, completion_tokens),
        )

    async def send_streaming(self, history: Sequence[Message]) -> AsyncIterator[StreamChunk]:
        kwargs = self._request_kwargs(history)
        logger.debug(f"API request: model={self._model}, messages={len(kwargs['messages'])}, stream=True")

        tool_calls = _ToolCallAccumulator()
        finish_reason: str | None = None
        prompt_tokens = 0
        completion_tokens = 0
        try:
            stream = await self._client.chat.completions.create(
                **kwargs,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                # With include_usage the last chunk carries usage and no choices.
                if getattr(chunk, "usage", None):
                    prompt_tokens = chunk.usage.prompt_tokens or 0
                    completion_tokens = chunk.usage.completion_tokens or 0

                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

                delta = choice.delta
                if delta is None:
                    continue
                if delta.tool_calls:
                    for tc_delta in delta.tool_calls:
                        tool_calls.add(tc_delta)
                if delta.content:
                    yield StreamChunk(delta_text=delta.content)
        except openai.APIError as ex:
            raise self._map_error(ex) from ex

        calls = tool_calls.build()
        logger.debug(
            f"API response: finish_reason={finish_reason}, tool_calls={len(calls)}, "
            f"prompt_tokens={prompt_tokens}, completion_tokens={completion_tokens}"
        )
        yield StreamChunk(
            is_final=True,
            usage=request_usage(self._model, prompt_tokens, completion_tokens),
            tool_calls=calls,
        )
