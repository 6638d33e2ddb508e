from __future__ import annotations

from collections.abc import AsyncIterator, Sequence

import anthropic
from loguru import logger

from agent_turn_loop.messages import Message, Role, StreamChunk, ToolCallRequest
from agent_turn_loop.provider import BaseAdapter, ProviderReply
from agent_turn_loop.providers.common import map_sdk_error, tool_definitions
from agent_turn_loop.tool import Tool
from agent_turn_loop.usage import request_usage

_RATE_LIMIT_ERRORS = (anthropic.RateLimitError,)
_UNREACHABLE_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
)


def _to_anthropic_messages(history: Sequence[Message]) -> tuple[str, list[dict]]:
    """Split history into the system prompt and Anthropic message dicts.

    Consecutive tool results are folded into one user message, which is how the
    Messages API expects the answers to a multi-tool assistant turn.
    """
    system_parts: list[str] = []
    out: list[dict] = []

    for msg in history:
        if msg.role is Role.SYSTEM:
            system_parts.append(msg.content)
        elif msg.role is Role.USER:
            out.append({"role": "user", "content": msg.content})
        elif msg.role is Role.ASSISTANT:
            if not msg.tool_calls:
                out.append({"role": "assistant", "content": msg.content})
                continue
            blocks: list[dict] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
            out.append({"role": "assistant", "content": blocks})
        elif msg.role is Role.TOOL:
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            }
            if msg.is_error:
                block["is_error"] = True
            previous = out[-1] if out else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})

    return "\n\n".join(p for p in system_parts if p), out


def _to_message(response) -> Message:
    text_parts: list[str] = []
    tool_calls: list[ToolCallRequest] = []
    for block in response.content:
        if block.type == "text":
            text_parts.append(block.text)
        elif block.type == "tool_use":
            tool_calls.append(ToolCallRequest(id=block.id, name=block.name, arguments=dict(block.input or {})))
    return Message.assistant("".join(text_parts), tool_calls)


class AnthropicAdapter(BaseAdapter):
    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        max_tokens: int = 8192,
        temperature: float = 1.0,
        tools: Sequence[Tool] = (),
        base_url: str | None = None,
        name: str = "anthropic",
    ):
        super().__init__(name=name, model=model, max_tokens=max_tokens, temperature=temperature, tools=tools)
        self._client = anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)

    def _request_kwargs(self, history: Sequence[Message]) -> dict:
        system_prompt, messages = _to_anthropic_messages(history)
        kwargs: dict = dict(
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            messages=messages,
        )
        if system_prompt:
            kwargs["system"] = system_prompt
        if self._tools:
            kwargs["tools"] = tool_definitions(self._tools)
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
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as ex:
            raise self._map_error(ex) from ex

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        return ProviderReply(
            message=_to_message(response),
            usage=request_usage(self._model, usage.input_tokens, usage.output_tokens),
        )

    async def send_streaming(self, history: Sequence[Message]) -> AsyncIterator[StreamChunk]:
        kwargs = self._request_kwargs(history)
        logger.debug(f"API request: model={self._model}, messages={len(kwargs['messages'])}, stream=True")
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and event.delta.type == "text_delta":
                        yield StreamChunk(delta_text=event.delta.text)
                response = await stream.get_final_message()
        except anthropic.APIError as ex:
            raise self._map_error(ex) from ex

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        message = _to_message(response)
        yield StreamChunk(
            is_final=True,
            usage=request_usage(self._model, usage.input_tokens, usage.output_tokens),
            tool_calls=message.tool_calls,
        )
