from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from agent_turn_loop.errors import StreamingUnsupported
from agent_turn_loop.messages import Message, StreamChunk
from agent_turn_loop.tool import Tool
from agent_turn_loop.usage import UsageSnapshot


@dataclass(frozen=True)
class ProviderReply:
    message: Message
    usage: UsageSnapshot


@runtime_checkable
class ProviderAdapter(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def model(self) -> str: ...

    async def send(self, history: Sequence[Message]) -> ProviderReply:
        """Non-streaming request. Fails with AdapterError."""
        ...

    def send_streaming(self, history: Sequence[Message]) -> AsyncIterator[StreamChunk]:
        """Stream the response as chunks ending with an ``is_final`` chunk.

        Fails with AdapterError; StreamingUnsupported when the backend has no
        native streaming.
        """
        ...


class BaseAdapter:
    """Shared adapter plumbing. Subclasses without native streaming only implement ``send``."""

    def __init__(
        self,
        *,
        name: str,
        model: str,
        max_tokens: int = 8192,
        temperature: float = 1.0,
        tools: Sequence[Tool] = (),
    ) -> None:
        self._name = name
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._tools = list(tools)

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str:
        return self._model

    async def send(self, history: Sequence[Message]) -> ProviderReply:
        raise NotImplementedError

    async def send_streaming(self, history: Sequence[Message]) -> AsyncIterator[StreamChunk]:
        raise StreamingUnsupported(f"{self._name} does not support streaming", adapter=self._name)
        yield  # pragma: no cover


def create_adapter(
    provider_name: str,
    api_key: str,
    *,
    model: str,
    max_tokens: int = 8192,
    temperature: float = 1.0,
    tools: Sequence[Tool] = (),
    base_url: str | None = None,
) -> ProviderAdapter:
    """Factory: create a ProviderAdapter by name."""
    name = provider_name.strip().lower()
    common = dict(model=model, max_tokens=max_tokens, temperature=temperature, tools=tools)
    if name == "anthropic":
        from agent_turn_loop.providers.anthropic_provider import AnthropicAdapter
        return AnthropicAdapter(api_key, base_url=base_url, **common)
    if name == "openai":
        from agent_turn_loop.providers.openai_provider import OpenAIAdapter
        return OpenAIAdapter(api_key, base_url=base_url, **common)
    if name == "openrouter":
        from agent_turn_loop.providers.openai_provider import OPENROUTER_BASE_URL, OpenAIAdapter
        return OpenAIAdapter(api_key, base_url=base_url or OPENROUTER_BASE_URL, name="openrouter", **common)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai', 'openrouter'")
