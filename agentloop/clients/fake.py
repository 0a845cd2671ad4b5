"""Scripted backend for tests and local development."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentloop.clients.base import BackendAdapter, ChunkCallback
from agentloop.config import BackendConfig
from agentloop.exceptions import DriverError
from agentloop.models.llm import DriverResponse, PromptOptions, Usage
from agentloop.models.messages import Message, ToolCall
from agentloop.tools.base import ToolDefinition
from agentloop.utils.callbacks import invoke_callback

ResponseFactory = Callable[["RecordedPrompt"], DriverResponse]


@dataclass
class RecordedPrompt:
    """One request received by the fake backend."""

    message: str | None
    tools: list[str]
    history: list[Message]
    options: PromptOptions | None
    streamed: bool = False


class FakeBackend(BackendAdapter):
    """Returns queued responses in order and records every request.

    When the queue runs dry the ``fallback`` response is repeated; a callable
    fallback is invoked with the recorded prompt, which allows responses that
    depend on the request.
    """

    name = "fake"

    def __init__(
        self,
        responses: list[DriverResponse | Exception] | None = None,
        fallback: DriverResponse | ResponseFactory | None = None,
    ):
        super().__init__(BackendConfig(driver="fake"))
        self.responses = list(responses or [])
        self.fallback = fallback
        self.prompts: list[RecordedPrompt] = []

    @classmethod
    def replying(cls, *contents: str) -> "FakeBackend":
        """Backend answering with plain text, one entry per call."""
        return cls(responses=[text_response(content) for content in contents])

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    def queue(self, *responses: DriverResponse | Exception) -> None:
        self.responses.extend(responses)

    async def prompt(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        return self._next(RecordedPrompt(message, [t.name for t in tools], list(history), options))

    async def stream(
        self,
        message: str | None,
        tools: list[ToolDefinition],
        history: list[Message],
        on_chunk: ChunkCallback,
        options: PromptOptions | None = None,
    ) -> DriverResponse:
        response = self._next(RecordedPrompt(message, [t.name for t in tools], list(history), options, streamed=True))
        for word in response.content.split(" "):
            if word:
                await invoke_callback(on_chunk, word + " ")
        return response

    def _next(self, recorded: RecordedPrompt) -> DriverResponse:
        self.prompts.append(recorded)

        if self.responses:
            response = self.responses.pop(0)
        elif callable(self.fallback):
            response = self.fallback(recorded)
        elif self.fallback is not None:
            response = self.fallback
        else:
            raise DriverError(f"FakeBackend has no response queued for call {self.call_count}")

        if isinstance(response, Exception):
            raise response

        self._record_usage(response.usage)
        return response


def text_response(content: str, finish_reason: str = "stop") -> DriverResponse:
    return DriverResponse(content=content, finish_reason=finish_reason, usage=Usage(10, 5))


def tool_call_response(
    name: str, arguments: dict[str, Any] | None = None, call_id: str | None = None, content: str = ""
) -> DriverResponse:
    """Response asking for a single tool call."""
    call = ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments or {})
    return DriverResponse(content=content, tool_calls=[call], finish_reason="tool_calls", usage=Usage(10, 5))
