"""Model-completion collaborator.

The orchestrator talks to the model through :class:`CompletionClient`, which
speaks in :mod:`portfolio_agent.models` types. :class:`OpenAICompletionClient`
adapts that to the OpenAI Chat Completions API (blocking and streaming).
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Protocol, Sequence

from openai import AsyncOpenAI

from ..models import (
    AssistantToolTurn,
    Message,
    ModelResponse,
    StreamEvent,
    ToolCall,
    ToolDescriptor,
    ToolResultsTurn,
    TranscriptItem,
)
from .errors import MalformedResponseError

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(
        self,
        system: str,
        messages: Sequence[TranscriptItem],
        tools: Sequence[ToolDescriptor],
    ) -> ModelResponse: ...

    def complete_stream(
        self,
        system: str,
        messages: Sequence[TranscriptItem],
        tools: Sequence[ToolDescriptor],
    ) -> AsyncIterator[StreamEvent]: ...

    async def close(self) -> None: ...


def to_openai_tools(tools: Sequence[ToolDescriptor]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def to_openai_messages(system: str, items: Sequence[TranscriptItem]) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    for item in items:
        if isinstance(item, Message):
            messages.append({"role": item.role, "content": item.content})
        elif isinstance(item, AssistantToolTurn):
            messages.append(
                {
                    "role": "assistant",
                    "content": item.text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.input),
                            },
                        }
                        for call in item.tool_calls
                    ],
                }
            )
        elif isinstance(item, ToolResultsTurn):
            for result in item.results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": result.content,
                    }
                )
        else:
            raise TypeError(f"Unsupported transcript item: {type(item).__name__}")
    return messages


def parse_tool_arguments(name: str, raw: str | None) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Invalid arguments for tool {name}: {e}") from e
    if not isinstance(args, dict):
        raise MalformedResponseError(f"Arguments for tool {name} are not an object")
    return args


class OpenAICompletionClient:
    """CompletionClient on top of openai.AsyncOpenAI."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Any) -> "OpenAICompletionClient":
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.model_timeout_seconds,
            max_retries=0,
        )
        return cls(
            client,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )

    def _request(
        self,
        system: str,
        messages: Sequence[TranscriptItem],
        tools: Sequence[ToolDescriptor],
    ) -> Dict[str, Any]:
        logger.debug(
            "Completion request model=%s items=%d tools=%d", self._model, len(messages), len(tools)
        )
        request: Dict[str, Any] = {
            "model": self._model,
            "messages": to_openai_messages(system, messages),
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        if tools:
            request["tools"] = to_openai_tools(tools)
            request["tool_choice"] = "auto"
        return request

    async def complete(
        self,
        system: str,
        messages: Sequence[TranscriptItem],
        tools: Sequence[ToolDescriptor],
    ) -> ModelResponse:
        response = await self._client.chat.completions.create(
            **self._request(system, messages, tools)
        )
        if not response.choices:
            raise MalformedResponseError("Completion returned no choices")

        message = response.choices[0].message
        result = ModelResponse()
        if message.content:
            result.texts.append(message.content)
        for tc in message.tool_calls or []:
            result.tool_calls.append(
                ToolCall(
                    id=tc.id,
                    name=tc.function.name,
                    input=parse_tool_arguments(tc.function.name, tc.function.arguments),
                )
            )
        return result

    async def complete_stream(
        self,
        system: str,
        messages: Sequence[TranscriptItem],
        tools: Sequence[ToolDescriptor],
    ) -> AsyncIterator[StreamEvent]:
        stream = await self._client.chat.completions.create(
            **self._request(system, messages, tools), stream=True
        )
        tool_calls_made: List[Dict[str, str]] = []
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield StreamEvent.text_delta(delta.content)
                for tool_call_delta in delta.tool_calls or []:
                    if tool_call_delta.index is None:
                        continue
                    while len(tool_calls_made) <= tool_call_delta.index:
                        tool_calls_made.append({"id": "", "name": "", "arguments": ""})
                    tc = tool_calls_made[tool_call_delta.index]
                    if tool_call_delta.id:
                        tc["id"] = tool_call_delta.id
                    if tool_call_delta.function:
                        if tool_call_delta.function.name:
                            tc["name"] = tool_call_delta.function.name
                        if tool_call_delta.function.arguments:
                            tc["arguments"] += tool_call_delta.function.arguments
        finally:
            await stream.close()

        for tc in tool_calls_made:
            if not tc["name"]:
                continue
            yield StreamEvent.tool_use(
                ToolCall(
                    id=tc["id"],
                    name=tc["name"],
                    input=parse_tool_arguments(tc["name"], tc["arguments"]),
                )
            )
        yield StreamEvent.end()

    async def close(self) -> None:
        await self._client.close()
