from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any

from loguru import logger

from agent_turn_loop.errors import (
    AdapterError,
    ProviderUnavailable,
    RateLimited,
    StreamInterrupted,
)
from agent_turn_loop.messages import Message, StreamChunk, ToolCallRequest
from agent_turn_loop.observer import notify
from agent_turn_loop.provider import ProviderAdapter
from agent_turn_loop.usage import UsageLedger, UsageSnapshot


class ResponseHandle:
    """Result of ``ReliableProvider.complete``: a live stream or a finished message."""

    adapter_name = ""

    async def message(self) -> Message:
        raise NotImplementedError

    async def aclose(self) -> None:
        return


class CompleteResponse(ResponseHandle):
    """A reply obtained with a single non-streaming request.

    The observer sees it as one final chunk carrying the whole text.
    """

    def __init__(
        self,
        message: Message,
        usage: UsageSnapshot,
        *,
        adapter_name: str = "",
        observer: Any = None,
    ) -> None:
        self._message = message
        self.usage = usage
        self.adapter_name = adapter_name
        self._observer = observer
        self._delivered = False

    async def message(self) -> Message:
        if not self._delivered:
            self._delivered = True
            chunk = StreamChunk(
                delta_text=self._message.content,
                is_final=True,
                usage=self.usage,
                tool_calls=self._message.tool_calls,
            )
            notify(self._observer, "on_chunk", chunk)
        return self._message


class StreamingResponse(ResponseHandle):
    """A stream that has already produced its first chunk.

    It can be consumed once. Usage is reported when consumption ends, whether
    the stream completed, failed or was abandoned. A failure after the first
    chunk raises StreamInterrupted carrying the text received so far; it is
    never retried here. A handle that will not be consumed must be released
    with ``aclose`` so the request is still accounted for.
    """

    def __init__(
        self,
        first_chunk: StreamChunk,
        stream: AsyncIterator[StreamChunk],
        *,
        adapter_name: str,
        on_usage: Any,
        observer: Any = None,
    ) -> None:
        self._first_chunk = first_chunk
        self._stream = stream
        self.adapter_name = adapter_name
        self._on_usage = on_usage
        self._observer = observer
        self._consumed = False
        self._parts: list[str] = []
        self._tool_calls: tuple[ToolCallRequest, ...] = ()
        self._usage: UsageSnapshot | None = None
        self._usage_reported = False

    @property
    def text_so_far(self) -> str:
        return "".join(self._parts)

    async def chunks(self) -> AsyncIterator[StreamChunk]:
        if self._consumed:
            raise RuntimeError("Streaming response has already been consumed")
        self._consumed = True

        chunk = self._first_chunk
        try:
            while True:
                if chunk.usage is not None:
                    self._usage = chunk.usage
                if chunk.delta_text:
                    self._parts.append(chunk.delta_text)
                notify(self._observer, "on_chunk", chunk)
                yield chunk
                if chunk.is_final:
                    self._tool_calls = chunk.tool_calls
                    return

                try:
                    chunk = await anext(self._stream)
                except StopAsyncIteration:
                    raise StreamInterrupted(
                        self.text_so_far,
                        usage=self._usage,
                        cause=AdapterError("stream ended without a final chunk", adapter=self.adapter_name),
                    ) from None
                except Exception as ex:
                    logger.warning(
                        f"Stream from {self.adapter_name} interrupted after "
                        f"{len(self.text_so_far)} chars: {ex}"
                    )
                    raise StreamInterrupted(self.text_so_far, usage=self._usage, cause=ex) from ex
        finally:
            self._report_usage()
            await _close_stream(self._stream)

    async def message(self) -> Message:
        async for _ in self.chunks():
            pass
        return Message.assistant(self.text_so_far, self._tool_calls)

    async def aclose(self) -> None:
        """Release a stream that will not be consumed; any usage it carried is still recorded."""
        if not self._consumed:
            self._consumed = True
            if self._first_chunk.usage is not None:
                self._usage = self._first_chunk.usage
        self._report_usage()
        await _close_stream(self._stream)

    def _report_usage(self) -> None:
        if self._usage_reported:
            return
        self._usage_reported = True
        if self._usage is not None:
            self._on_usage(self._usage)


async def _close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as ex:
        logger.debug(f"Ignoring error while closing provider stream: {ex}")


class ReliableProvider:
    """Streaming-first completion over one or more adapters.

    Per adapter the request runs in two phases. Phase one opens a stream and
    waits for its first chunk; any failure before that chunk (other than a rate
    limit) moves to phase two, a single non-streaming request with the same
    history. Rate limits are raised to the caller untouched. When an adapter
    fails outright the next one is tried; ProviderUnavailable is raised once
    every adapter has failed.
    """

    def __init__(
        self,
        adapters: ProviderAdapter | Sequence[ProviderAdapter],
        ledger: UsageLedger,
        *,
        observer: Any = None,
    ) -> None:
        if not isinstance(adapters, (list, tuple)):
            adapters = [adapters]
        if not adapters:
            raise ValueError("ReliableProvider requires at least one adapter")
        self._adapters = list(adapters)
        self._ledger = ledger
        self._observer = observer

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def primary(self) -> ProviderAdapter:
        return self._adapters[0]

    async def complete(self, history: Sequence[Message], streaming_preferred: bool = True) -> ResponseHandle:
        history = list(history)
        errors: list[AdapterError] = []
        for adapter in self._adapters:
            try:
                return await self._complete_with(adapter, history, streaming_preferred)
            except RateLimited:
                raise
            except AdapterError as ex:
                logger.warning(f"Provider adapter {adapter.name} failed: {ex}")
                errors.append(ex)
        raise ProviderUnavailable(errors)

    async def _complete_with(
        self,
        adapter: ProviderAdapter,
        history: list[Message],
        streaming_preferred: bool,
    ) -> ResponseHandle:
        if streaming_preferred:
            try:
                first_chunk, stream = await self._open_stream(adapter, history)
            except RateLimited:
                raise
            except Exception as ex:
                # No chunk has reached the caller yet.
                logger.info(f"Streaming unavailable on {adapter.name} ({ex}); falling back to a single request")
            else:
                return StreamingResponse(
                    first_chunk,
                    stream,
                    adapter_name=adapter.name,
                    on_usage=self._record,
                    observer=self._observer,
                )

        try:
            reply = await adapter.send(history)
        except AdapterError:
            raise
        except Exception as ex:
            raise AdapterError(f"{adapter.name} request failed ({type(ex).__name__}): {ex}", adapter=adapter.name) from ex
        self._record(reply.usage)
        return CompleteResponse(reply.message, reply.usage, adapter_name=adapter.name, observer=self._observer)

    async def _open_stream(
        self,
        adapter: ProviderAdapter,
        history: list[Message],
    ) -> tuple[StreamChunk, AsyncIterator[StreamChunk]]:
        stream = adapter.send_streaming(history)
        try:
            first_chunk = await anext(stream)
        except StopAsyncIteration:
            raise AdapterError("stream closed before the first chunk", adapter=adapter.name) from None
        except BaseException:
            await _close_stream(stream)
            raise
        return first_chunk, stream

    def _record(self, delta: UsageSnapshot) -> None:
        self._ledger.record(delta)
        notify(self._observer, "on_usage", self._ledger.read())
