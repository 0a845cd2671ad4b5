"""OpenAI-compatible chat-completions backend (OpenAI, DeepSeek, OpenRouter)."""

import json
from typing import Any

import httpx
from cuid2 import cuid_wrapper

from agentloop.clients.base import BackendAdapter, ChunkCallback, SleepFunction
from agentloop.config import BackendConfig
from agentloop.models.llm import DriverResponse, PromptOptions, Usage
from agentloop.models.messages import Message, Role, ToolCall
from agentloop.tools.base import ToolDefinition
from agentloop.utils.callbacks import invoke_callback
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


class OpenAICompatibleBackend(BackendAdapter):
    """Backend adapter for providers speaking the OpenAI chat-completions protocol."""

    def __init__(
        self,
        config: BackendConfig,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFunction | None = None,
    ):
        """Initialize the backend.

        Args:
            config: Backend configuration; ``driver`` selects the provider preset
            http_client: Preconfigured client (tests pass one with a mock transport)
            sleep: Awaitable sleep used for backoff
        """
        super().__init__(config, sleep=sleep)
        self.name = config.driver

        if not config.api_key and http_client is None:
            raise ValueError(f"An API key is required for the {config.driver} backend")

        self.base_url = (config.base_url or BASE_URLS.get(config.driver, BASE_URLS["openai"])).rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=config.timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if self.config.driver == "openrouter":
            if self.config.site_url:
                headers["HTTP-Referer"] = self.config.site_url
            if self.config.site_name:
                headers["X-Title"] = self.config.site_name
        return headers

    async def prompt(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        payload = self._payload(message, tools, history, options)
        await self._throttle_payload(payload)

        async def send() -> dict[str, Any]:
            response = await self.http_client.post(
                f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
            )
            response.raise_for_status()
            return response.json()

        logger.debug(f"Calling {self.name} {payload['model']} with {len(payload['messages'])} messages")
        data = await self._request_with_retries(send)
        return self._convert_response(data)

    async def stream(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        on_chunk: ChunkCallback,
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        payload = {**self._payload(message, tools, history, options), "stream": True}
        payload["stream_options"] = {"include_usage": True}
        await self._throttle_payload(payload)

        delivered = False

        async def forward(text: str) -> None:
            nonlocal delivered
            delivered = True
            await invoke_callback(on_chunk, text)

        async def send() -> DriverResponse:
            request = self.http_client.build_request(
                "POST", f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
            )
            response = await self.http_client.send(request, stream=True)
            try:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                return await self._consume_stream(response, forward)
            finally:
                await response.aclose()

        # Chunks already shown to the caller cannot be taken back
        result = await self._request_with_retries(send, can_retry=lambda: not delivered)
        self._record_usage(result.usage)
        return result

    def _payload(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        options: PromptOptions | None,
    ) -> dict[str, Any]:
        options = options or PromptOptions()
        messages = self._build_messages(message, history)

        formatted: list[dict[str, Any]] = []
        if options.system:
            formatted.append({"role": "system", "content": options.system})
        formatted.extend(format_message(m) for m in messages)

        payload: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": formatted,
            "max_tokens": options.max_tokens or self.config.max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.config.temperature,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.get_json_schema()},
                }
                for t in tools
            ]
        return payload

    async def _throttle_payload(self, payload: dict[str, Any]) -> None:
        if self.rate_limiter:
            await self._throttle([Message.user(json.dumps(payload["messages"], default=str))], None)

    def _convert_response(self, data: dict[str, Any]) -> DriverResponse:
        choices = data.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolCall(
                id=call.get("id") or f"call_{cuid()}",
                name=call.get("function", {}).get("name", ""),
                arguments=parse_arguments(call.get("function", {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]

        usage_data = data.get("usage") or {}
        usage = Usage(
            prompt_tokens=usage_data.get("prompt_tokens", 0),
            completion_tokens=usage_data.get("completion_tokens", 0),
        )
        self._record_usage(usage)

        return DriverResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            usage=usage,
            finish_reason=choice.get("finish_reason"),
        )

    async def _consume_stream(self, response: httpx.Response, on_chunk: ChunkCallback) -> DriverResponse:
        content_parts: list[str] = []
        partial_calls: dict[int, dict[str, Any]] = {}
        usage = Usage()
        finish_reason: str | None = None

        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:") :].strip()
            if data == "[DONE]":
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed stream chunk: {data[:100]}")
                continue

            if chunk.get("usage"):
                usage = Usage(
                    prompt_tokens=chunk["usage"].get("prompt_tokens", 0),
                    completion_tokens=chunk["usage"].get("completion_tokens", 0),
                )

            for choice in chunk.get("choices") or []:
                delta = choice.get("delta") or {}
                if text := delta.get("content"):
                    content_parts.append(text)
                    await invoke_callback(on_chunk, text)
                for call_delta in delta.get("tool_calls") or []:
                    index = call_delta.get("index", 0)
                    partial = partial_calls.setdefault(index, {"id": None, "name": "", "args": ""})
                    if call_delta.get("id"):
                        partial["id"] = call_delta["id"]
                    function = call_delta.get("function") or {}
                    partial["name"] += function.get("name") or ""
                    partial["args"] += function.get("arguments") or ""
                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]

        tool_calls = [
            ToolCall(
                id=partial["id"] or f"call_{cuid()}",
                name=partial["name"],
                arguments=parse_arguments(partial["args"]),
            )
            for _, partial in sorted(partial_calls.items())
        ]
        return DriverResponse(
            content="".join(content_parts), tool_calls=tool_calls, usage=usage, finish_reason=finish_reason
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()


def format_message(message: Message) -> dict[str, Any]:
    """Convert one normalized message to the chat-completions shape."""
    if message.role == Role.TOOL:
        return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}

    if message.role == Role.ASSISTANT and message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                }
                for call in message.tool_calls
            ],
        }

    return {"role": str(message.role), "content": message.content}


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments, treating malformed JSON as no arguments."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Malformed tool arguments: {str(raw)[:100]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}
