"""Tests for backend adapters: retry policy, request shaping and response conversion."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIConnectionError, APIStatusError

from agentloop.clients import create_backend
from agentloop.clients.anthropic import AnthropicBackend, format_messages
from agentloop.clients.fake import FakeBackend, text_response
from agentloop.clients.openai import OpenAICompatibleBackend, parse_arguments
from agentloop.config import BackendConfig
from agentloop.exceptions import DriverError, RateLimitExceeded
from agentloop.models.llm import PromptOptions
from agentloop.models.messages import Message, ToolCall, ToolResult


ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def api_status_error(status: int, headers: dict | None = None) -> APIStatusError:
    body = {"type": "error", "error": {"type": "api_error", "message": f"status {status}"}}
    response = httpx.Response(status, headers=headers, json=body, request=ANTHROPIC_REQUEST)
    return APIStatusError(f"Error code: {status}", response=response, body=body)


class ScriptedMessageStream:
    """Stands in for the SDK's message stream context manager."""

    def __init__(self, texts: list[str], final_message, error: Exception | None = None):
        self.texts = texts
        self.final_message = final_message
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        async def generate():
            for text in self.texts:
                yield text
            if self.error:
                raise self.error

        return generate()

    async def get_final_message(self):
        return self.final_message


def completion(content: str = "Hello", tool_calls: list | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3},
    }


class ScriptedTransport:
    """Serves queued responses and records requests."""

    def __init__(self, *responses: httpx.Response | Exception):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return SleepRecorder()


def make_backend(transport: ScriptedTransport, sleep: SleepRecorder, **config) -> OpenAICompatibleBackend:
    settings = {"driver": "openai", "api_key": "test-key", "retry_delay": 1.0, **config}
    client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
    return OpenAICompatibleBackend(BackendConfig(**settings), http_client=client, sleep=sleep)


class TestRetryPolicy:
    """Tests for the shared retry/backoff loop."""

    @pytest.mark.asyncio
    async def test_success_without_retry(self, sleep):
        """Test that a successful first attempt does not sleep."""
        transport = ScriptedTransport(httpx.Response(200, json=completion("Hi")))
        backend = make_backend(transport, sleep)

        response = await backend.prompt("Hello", [], [])

        assert response.content == "Hi"
        assert len(transport.requests) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_server_error_backs_off_linearly(self, sleep):
        """Test that 5xx responses are retried with retry_delay x attempt."""
        transport = ScriptedTransport(
            httpx.Response(500, json={"error": "boom"}),
            httpx.Response(502, json={"error": "boom"}),
            httpx.Response(200, json=completion("Recovered")),
        )
        backend = make_backend(transport, sleep)

        response = await backend.prompt("Hello", [], [])

        assert response.content == "Recovered"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_server_error_exhausted_raises_driver_error(self, sleep):
        """Test that persistent 5xx fails with a DriverError carrying status and body."""
        transport = ScriptedTransport(*[httpx.Response(503, json={"error": "down"}) for _ in range(3)])
        backend = make_backend(transport, sleep)

        with pytest.raises(DriverError) as exc_info:
            await backend.prompt("Hello", [], [])

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == {"error": "down"}
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, sleep):
        """Test that a 429 waits for the Retry-After header before retrying."""
        transport = ScriptedTransport(
            httpx.Response(429, headers={"Retry-After": "7"}, json={"error": "slow down"}),
            httpx.Response(200, json=completion("OK")),
        )
        backend = make_backend(transport, sleep)

        response = await backend.prompt("Hello", [], [])

        assert response.content == "OK"
        assert sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_rate_limit_without_header_uses_configured_delay(self, sleep):
        """Test that a 429 without Retry-After falls back to retry_delay."""
        transport = ScriptedTransport(httpx.Response(429), httpx.Response(200, json=completion()))
        backend = make_backend(transport, sleep, retry_delay=2.5)

        await backend.prompt("Hello", [], [])

        assert sleep.delays == [2.5]

    @pytest.mark.asyncio
    async def test_retry_after_is_capped(self, sleep):
        """Test that an excessive Retry-After is capped at max_retry_after."""
        transport = ScriptedTransport(
            httpx.Response(429, headers={"Retry-After": "3600"}),
            httpx.Response(200, json=completion()),
        )
        backend = make_backend(transport, sleep, max_retry_after=30)

        await backend.prompt("Hello", [], [])

        assert sleep.delays == [30.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_raises(self, sleep):
        """Test that repeated 429s end in RateLimitExceeded."""
        transport = ScriptedTransport(*[httpx.Response(429, headers={"Retry-After": "1"}) for _ in range(3)])
        backend = make_backend(transport, sleep)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await backend.prompt("Hello", [], [])

        assert exc_info.value.status_code == 429
        assert len(transport.requests) == 3
        assert sleep.delays == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, sleep):
        """Test that a 4xx other than 429 fails immediately."""
        transport = ScriptedTransport(httpx.Response(401, json={"error": "bad key"}))
        backend = make_backend(transport, sleep)

        with pytest.raises(DriverError) as exc_info:
            await backend.prompt("Hello", [], [])

        assert exc_info.value.status_code == 401
        assert exc_info.value.body == {"error": "bad key"}
        assert not exc_info.value.retryable
        assert len(transport.requests) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_connection_failures_exhaust_attempts(self, sleep):
        """Test that transport errors are retried then reported as DriverError."""
        transport = ScriptedTransport(*[httpx.ConnectError("refused") for _ in range(3)])
        backend = make_backend(transport, sleep)

        with pytest.raises(DriverError, match="Failed after 3 attempts"):
            await backend.prompt("Hello", [], [])

        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_max_retries_one_means_single_attempt(self, sleep):
        """Test that max_retries=1 sends exactly one request."""
        transport = ScriptedTransport(httpx.Response(500))
        backend = make_backend(transport, sleep, max_retries=1)

        with pytest.raises(DriverError):
            await backend.prompt("Hello", [], [])

        assert len(transport.requests) == 1


class TestOpenAICompatibleBackend:
    """Tests for chat-completions request shaping and response conversion."""

    @pytest.mark.asyncio
    async def test_request_payload(self, sleep, weather_tool):
        """Test that system prompt, normalized history, message and tools are sent."""
        transport = ScriptedTransport(httpx.Response(200, json=completion()))
        backend = make_backend(transport, sleep)
        history = [
            Message.user("Earlier"),
            Message.tool(ToolResult(tool_call_id="orphan", name="x", success=True, result="r")),
            Message.assistant("Earlier answer"),
        ]

        await backend.prompt("Now", [weather_tool], history, PromptOptions(system="Be brief", temperature=0.1))

        payload = json.loads(transport.requests[0].content)
        assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "user"]
        assert payload["messages"][0]["content"] == "Be brief"
        assert payload["messages"][-1]["content"] == "Now"
        assert payload["temperature"] == 0.1
        assert payload["model"] == "gpt-4o-mini"
        function = payload["tools"][0]["function"]
        assert function["name"] == "getWeather"
        assert function["parameters"]["required"] == ["city"]
        assert transport.requests[0].headers["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_tool_calls_are_normalized(self, sleep):
        """Test that provider tool calls become ToolCall objects with decoded arguments."""
        tool_calls = [
            {"id": "call_1", "type": "function", "function": {"name": "getWeather", "arguments": '{"city": "Riyadh"}'}},
            {"type": "function", "function": {"name": "broken", "arguments": "{not json"}},
        ]
        transport = ScriptedTransport(httpx.Response(200, json=completion("", tool_calls)))
        backend = make_backend(transport, sleep)

        response = await backend.prompt("Weather?", [], [])

        assert response.tool_calls[0] == ToolCall(id="call_1", name="getWeather", arguments={"city": "Riyadh"})
        assert response.tool_calls[1].id.startswith("call_")
        assert response.tool_calls[1].arguments == {}
        assert response.finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_usage_accumulates(self, sleep):
        """Test that get_usage reports cumulative token usage."""
        transport = ScriptedTransport(
            httpx.Response(200, json=completion()),
            httpx.Response(200, json=completion()),
        )
        backend = make_backend(transport, sleep)

        await backend.prompt("One", [], [])
        await backend.prompt("Two", [], [])

        usage = backend.get_usage()
        assert usage.prompt_tokens == 24
        assert usage.completion_tokens == 6
        assert usage.total_tokens == 30

    @pytest.mark.asyncio
    async def test_assistant_tool_turn_format(self, sleep):
        """Test that assistant tool calls and tool replies use the chat-completions shape."""
        transport = ScriptedTransport(httpx.Response(200, json=completion()))
        backend = make_backend(transport, sleep)
        tool_call = ToolCall(id="call_1", name="getWeather", arguments={"city": "Riyadh"})
        history = [
            Message.user("Weather?"),
            Message.assistant("", [tool_call]),
            Message.tool(ToolResult(tool_call_id="call_1", name="getWeather", success=True, result="Sunny")),
        ]

        await backend.prompt("Continue", [], history)

        messages = json.loads(transport.requests[0].content)["messages"]
        assert messages[1]["tool_calls"][0]["function"]["arguments"] == '{"city": "Riyadh"}'
        assert messages[1]["content"] is None
        assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": "Sunny"}

    @pytest.mark.asyncio
    async def test_streaming_delivers_chunks(self, sleep):
        """Test that streamed content and tool-call deltas are accumulated."""
        chunks = [
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "call_9", "function": {"name": "getWeather", "arguments": '{"ci'}}
                            ]
                        }
                    }
                ]
            },
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'ty": "Jeddah"}'}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
        ]
        body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks) + "data: [DONE]\n\n"
        transport = ScriptedTransport(
            httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})
        )
        backend = make_backend(transport, sleep)
        received: list[str] = []

        response = await backend.stream("Hi", [], [], received.append)

        assert received == ["Hel", "lo"]
        assert response.content == "Hello"
        assert response.tool_calls == [ToolCall(id="call_9", name="getWeather", arguments={"city": "Jeddah"})]
        assert response.finish_reason == "tool_calls"
        assert backend.get_usage().prompt_tokens == 5

    @pytest.mark.asyncio
    async def test_streaming_error_is_retried(self, sleep):
        """Test that streaming requests use the same retry policy."""
        transport = ScriptedTransport(
            httpx.Response(500, json={"error": "boom"}),
            httpx.Response(200, content=b'data: {"choices": [{"delta": {"content": "ok"}}]}\n\ndata: [DONE]\n\n'),
        )
        backend = make_backend(transport, sleep)

        response = await backend.stream("Hi", [], [], lambda chunk: None)

        assert response.content == "ok"
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_stream_interrupted_after_chunks_is_not_retried(self, sleep):
        """Test that a stream failing after delivering text is reported instead of replayed."""

        async def interrupted():
            yield b'data: {"choices": [{"delta": {"content": "Hel"}}]}\n\n'
            raise httpx.ReadError("connection reset")

        transport = ScriptedTransport(
            httpx.Response(200, content=interrupted(), headers={"content-type": "text/event-stream"}),
            httpx.Response(200, content=b'data: {"choices": [{"delta": {"content": "Hello"}}]}\n\ndata: [DONE]\n\n'),
        )
        backend = make_backend(transport, sleep)
        received: list[str] = []

        with pytest.raises(DriverError, match="Failed after 1 attempts"):
            await backend.stream("Hi", [], [], received.append)

        assert received == ["Hel"]
        assert len(transport.requests) == 1
        assert sleep.delays == []

    def test_openrouter_headers(self, sleep):
        """Test that OpenRouter attribution headers are added."""
        backend = make_backend(
            ScriptedTransport(), sleep, driver="openrouter", site_url="https://example.com", site_name="Example"
        )

        headers = backend._headers()

        assert backend.base_url == "https://openrouter.ai/api/v1"
        assert headers["HTTP-Referer"] == "https://example.com"
        assert headers["X-Title"] == "Example"

    def test_missing_api_key_raises(self):
        """Test that a backend without a key or client refuses to start."""
        with pytest.raises(ValueError, match="API key is required"):
            OpenAICompatibleBackend(BackendConfig(driver="deepseek"))

    def test_parse_arguments(self):
        """Test argument decoding for every shape providers send."""
        assert parse_arguments('{"a": 1}') == {"a": 1}
        assert parse_arguments({"a": 1}) == {"a": 1}
        assert parse_arguments("") == {}
        assert parse_arguments("[1, 2]") == {}
        assert parse_arguments("{oops") == {}


class TestAnthropicBackend:
    """Tests for the Anthropic adapter with a mocked SDK client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="Let me check."),
                    SimpleNamespace(type="tool_use", id="toolu_1", name="getWeather", input={"city": "Riyadh"}),
                ],
                usage=SimpleNamespace(input_tokens=20, output_tokens=8),
                stop_reason="tool_use",
            )
        )
        return client

    @pytest.mark.asyncio
    async def test_prompt_converts_response(self, client, weather_tool):
        """Test that text and tool_use blocks are normalized."""
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client)

        response = await backend.prompt("Weather?", [weather_tool], [], PromptOptions(system="Be brief"))

        assert response.content == "Let me check."
        assert response.tool_calls == [ToolCall(id="toolu_1", name="getWeather", arguments={"city": "Riyadh"})]
        assert response.finish_reason == "tool_use"
        assert backend.get_usage().total_tokens == 28

        params = client.messages.create.call_args.kwargs
        assert params["system"] == "Be brief"
        assert params["tools"][0]["input_schema"]["properties"]["city"]["type"] == "string"
        assert params["messages"] == [{"role": "user", "content": [{"type": "text", "text": "Weather?"}]}]

    @pytest.mark.asyncio
    async def test_system_messages_fold_into_system_parameter(self, client):
        """Test that history system messages are moved to the system parameter."""
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client)

        await backend.prompt("Hi", [], [Message.system("[Previous conversation context]\n- User asked: x")])

        params = client.messages.create.call_args.kwargs
        assert "Previous conversation context" in params["system"]
        assert all(m["role"] != "system" for m in params["messages"])

    def test_missing_api_key_raises(self):
        """Test that the adapter requires an API key without an injected client."""
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            AnthropicBackend(BackendConfig(driver="anthropic"))

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, client, sleep):
        """Test that an SDK 429 waits for Retry-After and then succeeds."""
        reply = client.messages.create.return_value
        client.messages.create.side_effect = [api_status_error(429, {"retry-after": "2"}), reply]
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)

        response = await backend.prompt("Weather?", [], [])

        assert response.content == "Let me check."
        assert client.messages.create.await_count == 2
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_raises(self, client, sleep):
        """Test that repeated SDK 429s end in RateLimitExceeded."""
        client.messages.create.side_effect = [api_status_error(429, {"retry-after": "2"}) for _ in range(3)]
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await backend.prompt("Weather?", [], [])

        assert exc_info.value.status_code == 429
        assert sleep.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, client, sleep):
        """Test that an SDK 5xx backs off and retries."""
        reply = client.messages.create.return_value
        client.messages.create.side_effect = [api_status_error(500), reply]
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)

        response = await backend.prompt("Weather?", [], [])

        assert response.finish_reason == "tool_use"
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self, client, sleep):
        """Test that an SDK 400 fails at once with the status and body."""
        client.messages.create.side_effect = api_status_error(400)
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)

        with pytest.raises(DriverError) as exc_info:
            await backend.prompt("Weather?", [], [])

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == {"type": "error", "error": {"type": "api_error", "message": "status 400"}}
        assert client.messages.create.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_attempts(self, client, sleep):
        """Test that SDK connection errors follow the transport retry policy."""
        client.messages.create.side_effect = [APIConnectionError(request=ANTHROPIC_REQUEST) for _ in range(3)]
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)

        with pytest.raises(DriverError, match="Failed after 3 attempts"):
            await backend.prompt("Weather?", [], [])

        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_streaming_delivers_chunks(self, client, sleep):
        """Test that streamed text reaches the callback and the final message is converted."""
        client.messages.stream = MagicMock(
            return_value=ScriptedMessageStream(["Let me ", "check."], client.messages.create.return_value)
        )
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)
        received: list[str] = []

        response = await backend.stream("Weather?", [], [], received.append)

        assert received == ["Let me ", "check."]
        assert response.tool_calls[0].name == "getWeather"
        assert backend.get_usage().total_tokens == 28
        assert client.messages.stream.call_args.kwargs["messages"][0]["role"] == "user"

    @pytest.mark.asyncio
    async def test_streaming_retried_before_first_chunk(self, client, sleep):
        """Test that a stream failing before any text is retried."""
        final = client.messages.create.return_value
        client.messages.stream = MagicMock(
            side_effect=[
                ScriptedMessageStream([], final, error=api_status_error(529)),
                ScriptedMessageStream(["ok"], final),
            ]
        )
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)
        received: list[str] = []

        await backend.stream("Weather?", [], [], received.append)

        assert received == ["ok"]
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_streaming_interrupted_after_chunks_is_not_retried(self, client, sleep):
        """Test that text already delivered is never replayed by a retry."""
        final = client.messages.create.return_value
        client.messages.stream = MagicMock(
            side_effect=[
                ScriptedMessageStream(["Let me "], final, error=APIConnectionError(request=ANTHROPIC_REQUEST)),
                ScriptedMessageStream(["Let me ", "check."], final),
            ]
        )
        backend = AnthropicBackend(BackendConfig(driver="anthropic"), client=client, sleep=sleep)
        received: list[str] = []

        with pytest.raises(DriverError, match="Failed after 1 attempts"):
            await backend.stream("Weather?", [], [], received.append)

        assert received == ["Let me "]
        assert client.messages.stream.call_count == 1
        assert sleep.delays == []

    def test_format_messages_merges_tool_results(self):
        """Test tool_use / tool_result blocks and merging of consecutive user turns."""
        tool_call = ToolCall(id="toolu_1", name="getWeather", arguments={"city": "Riyadh"})
        messages = [
            Message.user("Weather?"),
            Message.assistant("", [tool_call]),
            Message.tool(ToolResult(tool_call_id="toolu_1", name="getWeather", success=False, error="timeout")),
            Message.user("Based on the tool results, answer the user's question."),
        ]

        formatted = format_messages(messages)

        assert [turn["role"] for turn in formatted] == ["user", "assistant", "user"]
        assert formatted[1]["content"] == [
            {"type": "tool_use", "id": "toolu_1", "name": "getWeather", "input": {"city": "Riyadh"}}
        ]
        result_block, text_block = formatted[2]["content"]
        assert result_block["type"] == "tool_result"
        assert result_block["is_error"] is True
        assert text_block["type"] == "text"


class TestFakeBackend:
    """Tests for the scripted backend used throughout the suite."""

    @pytest.mark.asyncio
    async def test_replies_in_order_and_records_prompts(self):
        """Test that queued responses are returned in order."""
        backend = FakeBackend.replying("one", "two")

        first = await backend.prompt("a", [], [])
        second = await backend.prompt("b", [], [])

        assert (first.content, second.content) == ("one", "two")
        assert [p.message for p in backend.prompts] == ["a", "b"]
        assert backend.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_queue_without_fallback_fails(self):
        """Test that an unexpected extra call is reported."""
        backend = FakeBackend()

        with pytest.raises(DriverError, match="no response queued") as exc_info:
            await backend.prompt("a", [], [])
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_queued_exception_is_raised(self):
        """Test that queued exceptions are raised from prompt."""
        backend = FakeBackend([DriverError("boom", 500)], fallback=text_response("later"))

        with pytest.raises(DriverError):
            await backend.prompt("a", [], [])
        assert (await backend.prompt("b", [], [])).content == "later"

    def test_factory_selects_driver(self):
        """Test that create_backend builds the configured adapter."""
        assert isinstance(create_backend(BackendConfig(driver="fake")), FakeBackend)
        backend = create_backend(BackendConfig(driver="openai", api_key="k", model="gpt-4o"))
        assert isinstance(backend, OpenAICompatibleBackend)
        assert backend.model == "gpt-4o"
