import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Sequence

from ..models import (
    AssistantToolTurn,
    ChatResult,
    Message,
    ModelResponse,
    StreamEvent,
    ToolCall,
    ToolResultsTurn,
    TranscriptItem,
)
from ..services.conversation_repository import ConversationHistory
from .dispatcher import ToolDispatcher
from .errors import ErrorClassifier, MalformedResponseError, ToolRoundLimitExceeded
from .llm import CompletionClient
from .prompts import PromptAssembler, create_message
from .registry import ToolRegistry


class ChatStream:
    """Finite, single-consumer sequence of answer fragments for one turn.

    Iterating yields each text fragment as the model produces it. If producing
    the answer fails, exactly one fallback fragment is yielded and the sequence
    ends; the failure never reaches the consumer. Once finished (drained, failed
    or closed) the stream yields nothing more.
    """

    def __init__(
        self,
        fragments: AsyncIterator[str],
        on_failure: Callable[[Exception], Awaitable[str]],
    ) -> None:
        self._fragments = fragments
        self._on_failure = on_failure
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        try:
            return await self._fragments.__anext__()
        except StopAsyncIteration:
            self._finished = True
            raise
        except Exception as e:
            self._finished = True
            return await self._on_failure(e)

    async def aclose(self) -> None:
        """Stop early: release the upstream model stream without persisting anything."""
        if self._finished:
            return
        self._finished = True
        aclose = getattr(self._fragments, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class ConversationOrchestrator:
    """Drives one chat turn: prompt, model call, bounded tool round-trips, answer, persistence.

    Holds no per-session state; everything about a conversation is read from and
    written to the ConversationHistory collaborator.
    """

    def __init__(
        self,
        client: CompletionClient,
        assembler: PromptAssembler,
        dispatcher: ToolDispatcher,
        registry: ToolRegistry,
        history: ConversationHistory,
        classifier: ErrorClassifier | None = None,
        max_tool_rounds: int = 3,
        model_timeout_seconds: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._assembler = assembler
        self._dispatcher = dispatcher
        self._tools = registry.list()
        self._history = history
        self._logger = logger or logging.getLogger(__name__)
        self._classifier = classifier or ErrorClassifier(self._logger)
        self._max_tool_rounds = max_tool_rounds
        self._timeout = model_timeout_seconds

    async def chat(
        self,
        user_text: str,
        session_id: str,
        metadata: Dict[str, Any] | None = None,
    ) -> ChatResult:
        """Run a full turn and return the answer (or a fallback sentence on failure).

        Args:
            user_text: The visitor's message.
            session_id: Conversation the turn belongs to.
            metadata: Optional values merged into the session metadata.

        Returns:
            ChatResult: The answer, or the classified fallback message if the turn failed.
        """
        self._logger.info("Chat turn start session_id=%s", session_id)
        user_message = create_message("user", user_text)
        try:
            answer = await self._run_turn(session_id, user_message)
            await self._save_turn(session_id, user_message, answer, metadata)
        except Exception as e:
            classification = self._classifier.classify(e)
            await self._save_user_message(session_id, user_message, metadata)
            return ChatResult(response=classification.message, session_id=session_id)

        self._logger.info("Chat turn done session_id=%s", session_id)
        return ChatResult(response=answer, session_id=session_id)

    def chat_stream(
        self,
        user_text: str,
        session_id: str,
        metadata: Dict[str, Any] | None = None,
    ) -> ChatStream:
        """Start a streamed turn. Nothing happens until the first fragment is requested.

        Args:
            user_text: The visitor's message.
            session_id: Conversation the turn belongs to.
            metadata: Optional values merged into the session metadata.

        Returns:
            ChatStream: Answer fragments in order; a single fallback fragment on failure.
        """
        self._logger.info("Chat stream start session_id=%s", session_id)
        user_message = create_message("user", user_text)

        async def on_failure(error: Exception) -> str:
            classification = self._classifier.classify(error)
            await self._save_user_message(session_id, user_message, metadata)
            return classification.message

        return ChatStream(
            self._stream_turn(session_id, user_message, metadata),
            on_failure=on_failure,
        )

    async def _complete(self, system: str, transcript: Sequence[TranscriptItem]) -> ModelResponse:
        return await asyncio.wait_for(
            self._client.complete(system, transcript, self._tools),
            timeout=self._timeout,
        )

    async def _run_turn(self, session_id: str, user_message: Message) -> str:
        prompt = await self._assembler.build(session_id, user_message)
        transcript: List[TranscriptItem] = list(prompt.messages)

        response = await self._complete(prompt.system_prompt, transcript)
        rounds = 0
        while response.tool_calls:
            rounds = self._next_round(session_id, rounds, response.tool_calls)
            results = await self._dispatcher.process_batch(response.tool_calls)
            transcript.append(AssistantToolTurn(text=response.text, tool_calls=response.tool_calls))
            transcript.append(ToolResultsTurn(results=results))
            response = await self._complete(prompt.system_prompt, transcript)

        if not response.text:
            raise MalformedResponseError("Model returned an empty answer")
        return response.text

    async def _stream_turn(
        self,
        session_id: str,
        user_message: Message,
        metadata: Dict[str, Any] | None,
    ) -> AsyncIterator[str]:
        prompt = await self._assembler.build(session_id, user_message)
        transcript: List[TranscriptItem] = list(prompt.messages)
        emitted: List[str] = []
        rounds = 0

        while True:
            round_text: List[str] = []
            tool_calls: List[ToolCall] = []
            events = self._client.complete_stream(prompt.system_prompt, transcript, self._tools)
            try:
                while True:
                    event = await self._next_event(events)
                    if event is None or event.kind == "end":
                        break
                    if event.kind == "tool_use" and event.tool_call is not None:
                        tool_calls.append(event.tool_call)
                    elif event.kind == "text" and event.text:
                        round_text.append(event.text)
                        emitted.append(event.text)
                        yield event.text
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

            if not tool_calls:
                break
            rounds = self._next_round(session_id, rounds, tool_calls)
            results = await self._dispatcher.process_batch(tool_calls)
            transcript.append(AssistantToolTurn(text="".join(round_text), tool_calls=tool_calls))
            transcript.append(ToolResultsTurn(results=results))

        answer = "".join(emitted)
        if not answer:
            raise MalformedResponseError("Model returned an empty answer")
        # every fragment is already delivered; a failed write must not append a fallback
        try:
            await self._save_turn(session_id, user_message, answer, metadata)
        except Exception as e:
            self._logger.exception("Error saving streamed turn for %s: %s", session_id, e)
            return
        self._logger.info("Chat stream done session_id=%s", session_id)

    async def _next_event(self, events: AsyncIterator[StreamEvent]) -> StreamEvent | None:
        try:
            return await asyncio.wait_for(events.__anext__(), timeout=self._timeout)
        except StopAsyncIteration:
            return None

    def _next_round(self, session_id: str, rounds: int, tool_calls: Sequence[ToolCall]) -> int:
        if rounds >= self._max_tool_rounds:
            raise ToolRoundLimitExceeded(self._max_tool_rounds)
        ids = [c.id for c in tool_calls]
        if len(set(ids)) != len(ids):
            raise MalformedResponseError("Duplicate tool call ids in one response")
        self._logger.info(
            "Session %s: tool round %d, tools called in order: %s",
            session_id,
            rounds + 1,
            ", ".join(c.name for c in tool_calls),
        )
        return rounds + 1

    async def _save_turn(
        self,
        session_id: str,
        user_message: Message,
        answer: str,
        metadata: Dict[str, Any] | None,
    ) -> None:
        await self._history.add_messages(
            session_id, [user_message, create_message("assistant", answer)]
        )
        if metadata:
            await self._merge_metadata(session_id, metadata)

    async def _save_user_message(
        self,
        session_id: str,
        user_message: Message,
        metadata: Dict[str, Any] | None,
    ) -> None:
        """Persist only the user's message after a failed turn. Failures are logged, not raised."""
        try:
            await self._history.add_message(session_id, user_message)
            if metadata:
                await self._merge_metadata(session_id, metadata)
        except Exception as e:
            self._logger.exception("Error saving user message for %s: %s", session_id, e)

    async def _merge_metadata(self, session_id: str, metadata: Dict[str, Any]) -> None:
        current = await self._history.get_metadata(session_id) or {}
        await self._history.update_metadata(session_id, {**current, **metadata})
