import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Sequence

from ..models import Message, Role, utcnow
from ..services.conversation_repository import ConversationHistory


@dataclass(frozen=True)
class Prompt:
    system_prompt: str
    messages: List[Message]


def limit_conversation_history(messages: Sequence[Message], max_messages: int) -> List[Message]:
    """Keep the most recent max_messages entries, in their original order."""
    if max_messages <= 0:
        return []
    return list(messages[-max_messages:])


def create_message(role: Role, content: str, timestamp: datetime | None = None) -> Message:
    return Message(role=role, content=content, timestamp=timestamp or utcnow())


def format_messages(messages: Sequence[Message]) -> List[Dict[str, str]]:
    """Role/content pairs as sent to the model."""
    return [{"role": m.role, "content": m.content} for m in messages]


class PromptAssembler:
    """Builds the system prompt and the bounded message list for one turn."""

    def __init__(
        self,
        history: ConversationHistory,
        system_prompt: str,
        max_messages: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self._history = history
        self._system_prompt = system_prompt
        self._max_messages = max_messages
        self._logger = logger or logging.getLogger(__name__)

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    async def load_history(self, session_id: str) -> List[Message]:
        try:
            stored = await self._history.get_messages(session_id, limit=self._max_messages)
        except Exception as e:
            self._logger.exception("Error loading conversation history for %s: %s", session_id, e)
            return []
        turns = [m for m in stored if m.role in ("user", "assistant")]
        return limit_conversation_history(turns, self._max_messages)

    async def build(self, session_id: str, new_user_text: str | Message) -> Prompt:
        user_message = (
            new_user_text
            if isinstance(new_user_text, Message)
            else create_message("user", new_user_text)
        )
        history = await self.load_history(session_id)
        return Prompt(system_prompt=self._system_prompt, messages=history + [user_message])
