import asyncio
import json

import pytest

from portfolio_agent.agent import Capability, ToolDispatcher, ToolRegistry
from portfolio_agent.models import ResultEnvelope, ToolCall, ToolDescriptor


def _capability(name: str, handler) -> Capability:
    return Capability(
        descriptor=ToolDescriptor(name=name, description=name, input_schema={"type": "object"}),
        handler=handler,
    )


async def _echo(payload):
    return ResultEnvelope.ok({"echo": dict(payload)})


async def _boom(payload):
    raise RuntimeError("database is down")


async def _silent_boom(payload):
    raise RuntimeError()


async def _slow(payload):
    await asyncio.sleep(payload.get("delay", 1))
    return ResultEnvelope.ok({"delay": payload.get("delay")})


@pytest.fixture
def dispatcher() -> ToolDispatcher:
    registry = ToolRegistry(
        [
            _capability("echo", _echo),
            _capability("boom", _boom),
            _capability("silentBoom", _silent_boom),
            _capability("slow", _slow),
        ]
    )
    return ToolDispatcher(registry, timeout_seconds=0.5)


@pytest.mark.asyncio
async def test_unknown_tool(dispatcher: ToolDispatcher) -> None:
    """Unknown names produce the same failure envelope every time."""
    first = await dispatcher.execute("nope", {})
    second = await dispatcher.execute("nope", {})
    assert first == second == ResultEnvelope.fail("Unknown tool: nope")


@pytest.mark.asyncio
async def test_handler_exception_becomes_envelope(dispatcher: ToolDispatcher) -> None:
    assert await dispatcher.execute("boom", {}) == ResultEnvelope.fail("database is down")
    assert await dispatcher.execute("silentBoom", {}) == ResultEnvelope.fail(
        "Tool execution failed"
    )


@pytest.mark.asyncio
async def test_timeout_becomes_envelope(dispatcher: ToolDispatcher) -> None:
    envelope = await dispatcher.execute("slow", {"delay": 5})
    assert envelope == ResultEnvelope.fail("Tool slow timed out")


@pytest.mark.asyncio
async def test_none_payload_is_empty_object(dispatcher: ToolDispatcher) -> None:
    envelope = await dispatcher.execute("echo", None)
    assert envelope.data == {"echo": {}}


@pytest.mark.asyncio
async def test_batch_keeps_input_order(dispatcher: ToolDispatcher) -> None:
    """Results line up with calls even when later calls finish first."""
    calls = [
        ToolCall(id="c1", name="slow", input={"delay": 0.2}),
        ToolCall(id="c2", name="echo", input={"x": 1}),
        ToolCall(id="c3", name="missing", input={}),
        ToolCall(id="c4", name="boom", input={}),
    ]
    results = await dispatcher.process_batch(calls)

    assert [r.tool_call_id for r in results] == ["c1", "c2", "c3", "c4"]
    decoded = [json.loads(r.content) for r in results]
    assert decoded[0] == {"success": True, "data": {"delay": 0.2}}
    assert decoded[1] == {"success": True, "data": {"echo": {"x": 1}}}
    assert decoded[2] == {"success": False, "error": "Unknown tool: missing"}
    assert decoded[3] == {"success": False, "error": "database is down"}


@pytest.mark.asyncio
async def test_empty_batch(dispatcher: ToolDispatcher) -> None:
    assert await dispatcher.process_batch([]) == []
