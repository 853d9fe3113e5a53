import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from portfolio_agent.agent import MalformedResponseError, OpenAICompletionClient
from portfolio_agent.agent.llm import parse_tool_arguments, to_openai_messages, to_openai_tools
from portfolio_agent.models import (
    AssistantToolTurn,
    Message,
    ToolCall,
    ToolDescriptor,
    ToolResult,
    ToolResultsTurn,
)

TOOLS = [
    ToolDescriptor(
        name="checkAvailability",
        description="Availability",
        input_schema={"type": "object", "properties": {}},
    )
]


class FakeStream:
    """Async-iterable chunk stream with a close() like the SDK's AsyncStream."""

    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self._chunks:
            yield chunk


def _chunk(content=None, tool_calls=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def _tc_delta(index, id=None, name=None, arguments=None):
    function = SimpleNamespace(name=name, arguments=arguments)
    return SimpleNamespace(index=index, id=id, function=function)


def _openai_client(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    client.close = AsyncMock()
    return client


def test_to_openai_tools() -> None:
    assert to_openai_tools(TOOLS) == [
        {
            "type": "function",
            "function": {
                "name": "checkAvailability",
                "description": "Availability",
                "parameters": {"type": "object", "properties": {}},
            },
        }
    ]


def test_to_openai_messages_with_tool_round() -> None:
    items = [
        Message(role="user", content="free?"),
        AssistantToolTurn(
            text="", tool_calls=[ToolCall(id="c1", name="checkAvailability", input={"a": 1})]
        ),
        ToolResultsTurn(results=[ToolResult(tool_call_id="c1", content='{"success": true}')]),
    ]
    messages = to_openai_messages("sys", items)

    assert messages[0] == {"role": "system", "content": "sys"}
    assert messages[1] == {"role": "user", "content": "free?"}
    assert messages[2]["role"] == "assistant"
    assert messages[2]["content"] is None
    assert messages[2]["tool_calls"][0]["id"] == "c1"
    assert json.loads(messages[2]["tool_calls"][0]["function"]["arguments"]) == {"a": 1}
    assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": '{"success": true}'}


def test_to_openai_messages_rejects_unknown_items() -> None:
    with pytest.raises(TypeError):
        to_openai_messages("sys", [{"role": "user", "content": "raw dict"}])


def test_parse_tool_arguments() -> None:
    assert parse_tool_arguments("t", None) == {}
    assert parse_tool_arguments("t", '{"q": "rails"}') == {"q": "rails"}
    with pytest.raises(MalformedResponseError):
        parse_tool_arguments("t", "{not json")
    with pytest.raises(MalformedResponseError):
        parse_tool_arguments("t", "[1, 2]")


@pytest.mark.asyncio
async def test_complete_parses_text_and_tool_calls() -> None:
    message = SimpleNamespace(
        content="Checking.",
        tool_calls=[
            SimpleNamespace(
                id="call_1",
                function=SimpleNamespace(name="checkAvailability", arguments="{}"),
            )
        ],
    )
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    client = OpenAICompletionClient(_openai_client(create), model="gpt-test", max_tokens=100)

    response = await client.complete("sys", [Message(role="user", content="hi")], TOOLS)

    assert response.text == "Checking."
    assert response.tool_calls == [ToolCall(id="call_1", name="checkAvailability", input={})]
    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["max_tokens"] == 100
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_complete_without_tools_omits_tool_fields() -> None:
    message = SimpleNamespace(content="hello", tool_calls=None)
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    client = OpenAICompletionClient(_openai_client(create), model="gpt-test")

    response = await client.complete("sys", [], [])

    assert response.text == "hello"
    assert "tools" not in create.call_args.kwargs
    assert "tool_choice" not in create.call_args.kwargs


@pytest.mark.asyncio
async def test_complete_no_choices_is_malformed() -> None:
    create = AsyncMock(return_value=SimpleNamespace(choices=[]))
    client = OpenAICompletionClient(_openai_client(create), model="gpt-test")
    with pytest.raises(MalformedResponseError):
        await client.complete("sys", [], TOOLS)


@pytest.mark.asyncio
async def test_complete_stream_assembles_tool_call_deltas() -> None:
    """Tool call fragments are stitched by index and emitted after the text."""
    stream = FakeStream(
        [
            SimpleNamespace(choices=[]),
            _chunk(content="Let me "),
            _chunk(content="check."),
            _chunk(tool_calls=[_tc_delta(0, id="call_1", name="searchProjects", arguments='{"tech')]),
            _chunk(tool_calls=[_tc_delta(0, arguments='nologies": ["Rails"]}')]),
            _chunk(tool_calls=[_tc_delta(1, id="call_2", name="checkAvailability")]),
        ]
    )
    create = AsyncMock(return_value=stream)
    client = OpenAICompletionClient(_openai_client(create), model="gpt-test")

    events = [e async for e in client.complete_stream("sys", [], TOOLS)]

    assert [e.kind for e in events] == ["text", "text", "tool_use", "tool_use", "end"]
    assert events[0].text + events[1].text == "Let me check."
    assert events[2].tool_call == ToolCall(
        id="call_1", name="searchProjects", input={"technologies": ["Rails"]}
    )
    assert events[3].tool_call == ToolCall(id="call_2", name="checkAvailability", input={})
    assert create.call_args.kwargs["stream"] is True
    stream.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_complete_stream_malformed_arguments() -> None:
    stream = FakeStream([_chunk(tool_calls=[_tc_delta(0, id="c", name="x", arguments="{oops")])])
    client = OpenAICompletionClient(_openai_client(AsyncMock(return_value=stream)), model="m")
    with pytest.raises(MalformedResponseError):
        async for _ in client.complete_stream("sys", [], TOOLS):
            pass
    stream.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_closes_sdk_client() -> None:
    sdk = _openai_client(AsyncMock())
    await OpenAICompletionClient(sdk, model="m").close()
    sdk.close.assert_awaited_once()
