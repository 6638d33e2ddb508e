import asyncio
import unittest
from types import SimpleNamespace

import anthropic
import httpx

from agent_turn_loop.errors import AdapterError, AdapterUnreachable, RateLimited
from agent_turn_loop.messages import Message, ToolCallRequest, ToolResult
from agent_turn_loop.providers.anthropic_provider import AnthropicAdapter, _to_anthropic_messages
from tests.fakes import EchoTool

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class _FakeStreamContext:
    def __init__(self, events: list[object], final_message: object, error: Exception | None = None):
        self._events = events
        self._final_message = final_message
        self._error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration

    async def get_final_message(self):
        return self._final_message


class _FakeMessages:
    def __init__(self, stream_ctx=None, create_response=None, create_error=None):
        self._stream_ctx = stream_ctx
        self._create_response = create_response
        self._create_error = create_error
        self.calls: list[dict] = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream_ctx

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._create_error is not None:
            raise self._create_error
        return self._create_response


def _adapter(messages: _FakeMessages, tools=()) -> AnthropicAdapter:
    adapter = AnthropicAdapter("test-key", model="claude-sonnet-4-5", max_tokens=100, temperature=0.5, tools=tools)
    adapter._client = SimpleNamespace(messages=messages)
    return adapter


def _text_delta(text: str):
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


async def _collect(stream):
    return [chunk async for chunk in stream]


class ToAnthropicMessagesTests(unittest.TestCase):
    def test_system_messages_are_lifted(self) -> None:
        system, messages = _to_anthropic_messages([Message.system("be brief"), Message.user("hi")])
        self.assertEqual("be brief", system)
        self.assertEqual([{"role": "user", "content": "hi"}], messages)

    def test_tool_calls_and_results_become_blocks(self) -> None:
        calls = (
            ToolCallRequest(id="t1", name="read_file", arguments={"path": "a"}),
            ToolCallRequest(id="t2", name="bash", arguments={"command": "ls"}),
        )
        history = [
            Message.user("look"),
            Message.assistant("Sure", calls),
            Message.tool_result(ToolResult(id="t1", output="contents")),
            Message.tool_result(ToolResult(id="t2", output="", error="boom", error_kind="execution")),
        ]

        _, messages = _to_anthropic_messages(history)

        self.assertEqual(3, len(messages))
        assistant = messages[1]["content"]
        self.assertEqual({"type": "text", "text": "Sure"}, assistant[0])
        self.assertEqual("tool_use", assistant[1]["type"])
        self.assertEqual({"path": "a"}, assistant[1]["input"])
        results = messages[2]["content"]
        self.assertEqual(["t1", "t2"], [b["tool_use_id"] for b in results])
        self.assertNotIn("is_error", results[0])
        self.assertTrue(results[1]["is_error"])

    def test_successful_output_that_looks_like_an_error_is_not_flagged(self) -> None:
        call = ToolCallRequest(id="t1", name="grep", arguments={"pattern": "x"})
        history = [
            Message.user("search"),
            Message.assistant("", (call,)),
            Message.tool_result(ToolResult(id="t1", output="Error: pattern not found (exit 0)")),
        ]

        _, messages = _to_anthropic_messages(history)

        block = messages[2]["content"][0]
        self.assertEqual("Error: pattern not found (exit 0)", block["content"])
        self.assertNotIn("is_error", block)


class AnthropicAdapterTests(unittest.TestCase):
    def test_send_returns_message_and_usage(self) -> None:
        response = SimpleNamespace(
            stop_reason="tool_use",
            usage=SimpleNamespace(input_tokens=12, output_tokens=4),
            content=[
                SimpleNamespace(type="text", text="Reading"),
                SimpleNamespace(type="tool_use", id="t1", name="read_file", input={"path": "x"}),
            ],
        )
        messages = _FakeMessages(create_response=response)
        adapter = _adapter(messages, tools=[EchoTool("read_file")])

        reply = asyncio.run(adapter.send([Message.system("sys"), Message.user("hi")]))

        self.assertEqual("Reading", reply.message.content)
        self.assertEqual((ToolCallRequest(id="t1", name="read_file", arguments={"path": "x"}),), reply.message.tool_calls)
        self.assertEqual(12, reply.usage.prompt_tokens)
        self.assertEqual(1, reply.usage.request_count)
        self.assertEqual("sys", messages.calls[0]["system"])
        self.assertEqual("read_file", messages.calls[0]["tools"][0]["name"])

    def test_stream_yields_text_then_final_chunk(self) -> None:
        final_message = SimpleNamespace(
            stop_reason="tool_use",
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
            content=[
                SimpleNamespace(type="text", text="Hello world"),
                SimpleNamespace(type="tool_use", id="t1", name="bash", input={"command": "ls"}),
            ],
        )
        stream = _FakeStreamContext([_text_delta("Hello"), _text_delta(" world")], final_message)

        chunks = asyncio.run(_collect(_adapter(_FakeMessages(stream_ctx=stream)).send_streaming([Message.user("hi")])))

        self.assertEqual(["Hello", " world", ""], [c.delta_text for c in chunks])
        self.assertTrue(chunks[-1].is_final)
        self.assertEqual(15, chunks[-1].usage.total_tokens)
        self.assertEqual("bash", chunks[-1].tool_calls[0].name)

    def test_rate_limit_is_mapped(self) -> None:
        response = httpx.Response(429, request=_REQUEST, headers={"retry-after": "7"})
        error = anthropic.RateLimitError("rate limited", response=response, body=None)
        adapter = _adapter(_FakeMessages(create_error=error))

        with self.assertRaises(RateLimited) as ctx:
            asyncio.run(adapter.send([Message.user("hi")]))

        self.assertEqual(7.0, ctx.exception.retry_after)
        self.assertEqual("anthropic", ctx.exception.adapter)

    def test_connection_error_is_mapped_to_unreachable(self) -> None:
        adapter = _adapter(_FakeMessages(create_error=anthropic.APIConnectionError(request=_REQUEST)))
        with self.assertRaises(AdapterUnreachable):
            asyncio.run(adapter.send([Message.user("hi")]))

    def test_mid_stream_error_is_an_adapter_error(self) -> None:
        response = httpx.Response(529, request=_REQUEST)
        overloaded = anthropic.APIStatusError("overloaded", response=response, body=None)
        stream = _FakeStreamContext([_text_delta("partial")], None, error=overloaded)

        async def scenario():
            received = []
            with self.assertRaises(AdapterError):
                async for chunk in _adapter(_FakeMessages(stream_ctx=stream)).send_streaming([Message.user("hi")]):
                    received.append(chunk)
            return received

        received = asyncio.run(scenario())
        self.assertEqual(["partial"], [c.delta_text for c in received])


if __name__ == "__main__":
    unittest.main()
