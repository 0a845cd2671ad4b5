"""Anthropic Messages API backend."""

import json
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic
from anthropic.types import Message as AnthropicMessage

from agentloop.clients.base import BackendAdapter, ChunkCallback, SleepFunction
from agentloop.config import BackendConfig
from agentloop.models.llm import DriverResponse, PromptOptions, Usage
from agentloop.models.messages import Message, Role, ToolCall
from agentloop.tools.base import ToolDefinition
from agentloop.utils.callbacks import invoke_callback
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


class AnthropicBackend(BackendAdapter):
    """Backend adapter for Claude models."""

    name = "anthropic"

    def __init__(
        self,
        config: BackendConfig,
        client: AsyncAnthropic | None = None,
        sleep: SleepFunction | None = None,
    ):
        """Initialize the Anthropic backend.

        Args:
            config: Backend configuration; ``api_key`` is required unless a client is given
            client: Preconfigured SDK client
            sleep: Awaitable sleep used for backoff
        """
        super().__init__(config, sleep=sleep)

        if client is None:
            if not config.api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            # Retries are handled by the adapter's own policy
            client = AsyncAnthropic(
                api_key=config.api_key,
                base_url=config.base_url,
                timeout=config.timeout,
                max_retries=0,
            )
        self.client = client

    async def prompt(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        params = self._request_params(message, tools, history, options)
        await self._throttle_params(params)

        logger.debug(f"Calling Anthropic {params['model']} with {len(params['messages'])} messages")
        response: AnthropicMessage = await self._request_with_retries(
            _translate_errors(lambda: self.client.messages.create(**params))
        )
        return self._convert_response(response)

    async def stream(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        on_chunk: ChunkCallback,
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        params = self._request_params(message, tools, history, options)
        await self._throttle_params(params)

        delivered = False

        async def run_stream() -> AnthropicMessage:
            nonlocal delivered
            async with self.client.messages.stream(**params) as stream:
                async for text in stream.text_stream:
                    delivered = True
                    await invoke_callback(on_chunk, text)
                return await stream.get_final_message()

        response = await self._request_with_retries(_translate_errors(run_stream), can_retry=lambda: not delivered)
        return self._convert_response(response)

    def _request_params(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        options: PromptOptions | None,
    ) -> dict[str, Any]:
        options = options or PromptOptions()
        messages = self._build_messages(message, history)

        # Anthropic takes system text as a parameter, not as a turn
        system_parts = [options.system] if options.system else []
        system_parts += [m.content for m in messages if m.role == Role.SYSTEM and m.content]

        params: dict[str, Any] = {
            "model": options.model or self.model,
            "max_tokens": options.max_tokens or self.config.max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.config.temperature,
            "messages": format_messages(messages),
        }
        if system_parts:
            params["system"] = "\n\n".join(system_parts)
        if tools:
            params["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.get_json_schema()} for t in tools
            ]
        return params

    async def _throttle_params(self, params: dict[str, Any]) -> None:
        if self.rate_limiter:
            await self._throttle([Message.user(json.dumps(params["messages"], default=str))], params.get("system"))

    def _convert_response(self, response: AnthropicMessage) -> DriverResponse:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []

        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))
            else:
                logger.debug(f"Ignoring content block of type {block.type}")

        usage = Usage()
        if response.usage:
            usage = Usage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            )
        self._record_usage(usage)

        logger.debug(f"Response received - Stop reason: {response.stop_reason}, tool calls: {len(tool_calls)}")

        return DriverResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            usage=usage,
            finish_reason=response.stop_reason,
        )


def format_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert normalized history to Anthropic turns.

    Tool calls become ``tool_use`` blocks, tool replies become ``tool_result``
    blocks on a user turn, and consecutive turns with the same role are merged.
    """
    formatted: list[dict[str, Any]] = []

    for message in messages:
        if message.role == Role.SYSTEM:
            continue

        if message.role == Role.TOOL:
            role = "user"
            blocks: list[dict[str, Any]] = [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                    "is_error": message.content.startswith("Error:"),
                }
            ]
        elif message.role == Role.ASSISTANT:
            role = "assistant"
            blocks = [{"type": "text", "text": message.content}] if message.content else []
            blocks += [
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                for call in message.tool_calls
            ]
        else:
            role = "user"
            blocks = [{"type": "text", "text": message.content}] if message.content else []

        if not blocks:
            continue

        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": blocks})

    return formatted


def _translate_errors[T](call: Callable[[], Awaitable[T]]) -> Callable[[], Awaitable[T]]:
    """Re-raise SDK errors as the httpx errors the retry policy understands."""

    async def wrapped() -> T:
        try:
            return await call()
        except APIStatusError as e:
            raise httpx.HTTPStatusError(str(e), request=e.request, response=e.response) from e
        except APIConnectionError as e:
            raise httpx.ConnectError(str(e), request=e.request) from e

    return wrapped
