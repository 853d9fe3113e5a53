import asyncio
import logging
from typing import Any, List, Mapping, Sequence

from ..models import ResultEnvelope, ToolCall, ToolResult
from .registry import ToolRegistry


class ToolDispatcher:
    """Runs tool calls against the registry. Never raises: every outcome is an envelope."""

    def __init__(
        self,
        registry: ToolRegistry,
        timeout_seconds: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._registry = registry
        self._timeout = timeout_seconds
        self._logger = logger or logging.getLogger(__name__)

    async def execute(self, name: str, payload: Mapping[str, Any] | None) -> ResultEnvelope:
        """Run one tool call.

        Args:
            name: Tool name requested by the model.
            payload: Tool input as sent by the model; None is treated as an empty object.

        Returns:
            ResultEnvelope: The tool outcome; any failure is reported as a failed envelope.
        """
        capability = self._registry.get(name)
        if capability is None:
            self._logger.warning("Model requested unknown tool: %s", name)
            return ResultEnvelope.fail(f"Unknown tool: {name}")

        self._logger.info("Executing tool: %s", name)
        try:
            envelope = await asyncio.wait_for(
                capability.handler(payload if payload is not None else {}),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._logger.error("Tool %s timed out after %ss", name, self._timeout)
            return ResultEnvelope.fail(f"Tool {name} timed out")
        except Exception as e:
            self._logger.exception("Error executing tool %s: %s", name, e)
            return ResultEnvelope.fail(str(e) or "Tool execution failed")

        if envelope.success:
            self._logger.info("Tool %s completed successfully", name)
        else:
            self._logger.info("Tool %s reported failure: %s", name, envelope.error)
        return envelope

    async def process_batch(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        """Execute all calls of one round concurrently; results follow input order."""
        envelopes = await asyncio.gather(*(self.execute(c.name, c.input) for c in calls))
        return [
            ToolResult(tool_call_id=call.id, content=envelope.to_json())
            for call, envelope in zip(calls, envelopes)
        ]
