import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from portfolio_agent.agent import (  # noqa: E402
    ConversationOrchestrator,
    ErrorClassifier,
    PromptAssembler,
    ToolDispatcher,
    build_portfolio_registry,
)
from portfolio_agent.services.conversation_repository import (  # noqa: E402
    InMemoryConversationRepository,
)
from portfolio_agent.services.portfolio_store import PortfolioStore  # noqa: E402


class StatusError(Exception):
    """Stand-in for an SDK error that carries an HTTP status."""

    def __init__(self, status_code: int, message: str = "upstream error") -> None:
        super().__init__(message)
        self.status_code = status_code


class ScriptedCompletionClient:
    """CompletionClient replaying scripted replies and recording every request.

    ``responses`` items are ModelResponse or exceptions (raised on that call);
    ``streams`` items are lists of StreamEvent / exceptions, one list per stream.
    """

    def __init__(self, responses: List[Any] | None = None, streams: List[List[Any]] | None = None) -> None:
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.closed_streams = 0
        self.closed = False

    async def complete(self, system, messages, tools):
        self.calls.append({"system": system, "messages": list(messages), "tools": list(tools)})
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def complete_stream(self, system, messages, tools):
        self.stream_calls.append({"system": system, "messages": list(messages), "tools": list(tools)})
        script = self.streams.pop(0)
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed_streams += 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def status_error() -> type:
    return StatusError


@pytest.fixture
def scripted_client() -> type:
    return ScriptedCompletionClient


@pytest.fixture
def store(tmp_path: Path) -> PortfolioStore:
    """Seeded SQLite portfolio database in a temp dir."""
    s = PortfolioStore(tmp_path / "portfolio.db")
    s.init_schema()
    return s


@pytest.fixture
def history() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def make_orchestrator(store: PortfolioStore, history: InMemoryConversationRepository):
    """Factory wiring an orchestrator around a scripted client and the in-memory store."""

    def _make(client: ScriptedCompletionClient, **kwargs: Any) -> ConversationOrchestrator:
        registry = build_portfolio_registry(store)
        return ConversationOrchestrator(
            client=client,
            assembler=PromptAssembler(
                history,
                system_prompt="You are a test assistant.",
                max_messages=kwargs.pop("max_messages", 10),
            ),
            dispatcher=ToolDispatcher(registry, timeout_seconds=5),
            registry=registry,
            history=history,
            classifier=ErrorClassifier(),
            **kwargs,
        )

    return _make
