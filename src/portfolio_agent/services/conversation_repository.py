"""Conversation persistence.

Two implementations of the :class:`ConversationHistory` protocol: an in-memory
one used when no Redis URL is configured, and a Redis-backed one that keeps the
messages of a session in a list and its bookkeeping in a hash. Both are created
explicitly and must be started with ``init()`` and stopped with ``shutdown()``.
"""

import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Protocol, Sequence

from ..models import ConversationState, Message, utcnow
from ..settings import Settings
from .redis import Command, RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

CONVERSATION_KEY_PREFIX = "conversation:"


class PersistenceError(Exception):
    """A write to the conversation store did not go through."""


class ConversationExistsError(Exception):
    """create_conversation was called for a session that already exists."""


class ConversationHistory(Protocol):
    async def init(self) -> None: ...

    async def shutdown(self) -> None: ...

    async def find_by_session_id(self, session_id: str) -> ConversationState | None: ...

    async def create_conversation(
        self,
        session_id: str,
        messages: Sequence[Message] | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ConversationState: ...

    async def add_message(self, session_id: str, message: Message) -> ConversationState: ...

    async def add_messages(
        self, session_id: str, messages: Sequence[Message]
    ) -> ConversationState: ...

    async def update_messages(
        self, session_id: str, messages: Sequence[Message]
    ) -> ConversationState: ...

    async def get_messages(self, session_id: str, limit: int | None = None) -> List[Message]: ...

    async def delete_conversation(self, session_id: str) -> None: ...

    async def get_metadata(self, session_id: str) -> Dict[str, Any] | None: ...

    async def update_metadata(
        self, session_id: str, metadata: Dict[str, Any]
    ) -> ConversationState: ...


def _tail(messages: List[Message], limit: int | None) -> List[Message]:
    """Last ``limit`` messages; None or a non-positive limit means all of them."""
    if limit is None or limit <= 0:
        return list(messages)
    return messages[-limit:]


class InMemoryConversationRepository:
    """Process-local conversation store. Mutations never await, so each call is atomic."""

    def __init__(self) -> None:
        self._conversations: Dict[str, ConversationState] = {}

    async def init(self) -> None:
        logger.info("Using in-memory conversation store")

    async def shutdown(self) -> None:
        logger.debug("In-memory conversation store stopped (%d sessions)", len(self._conversations))

    def _snapshot(self, state: ConversationState) -> ConversationState:
        return replace(state, messages=list(state.messages), metadata=dict(state.metadata))

    def _upsert(self, session_id: str) -> ConversationState:
        state = self._conversations.get(session_id)
        if state is None:
            state = ConversationState(session_id=session_id)
            self._conversations[session_id] = state
        state.last_activity = utcnow()
        return state

    async def find_by_session_id(self, session_id: str) -> ConversationState | None:
        state = self._conversations.get(session_id)
        return self._snapshot(state) if state is not None else None

    async def create_conversation(
        self,
        session_id: str,
        messages: Sequence[Message] | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ConversationState:
        if session_id in self._conversations:
            raise ConversationExistsError(session_id)
        state = ConversationState(
            session_id=session_id,
            messages=list(messages or []),
            metadata=dict(metadata or {}),
        )
        self._conversations[session_id] = state
        return self._snapshot(state)

    async def add_message(self, session_id: str, message: Message) -> ConversationState:
        return await self.add_messages(session_id, [message])

    async def add_messages(
        self, session_id: str, messages: Sequence[Message]
    ) -> ConversationState:
        state = self._upsert(session_id)
        state.messages.extend(messages)
        return self._snapshot(state)

    async def update_messages(
        self, session_id: str, messages: Sequence[Message]
    ) -> ConversationState:
        state = self._upsert(session_id)
        state.messages = list(messages)
        return self._snapshot(state)

    async def get_messages(self, session_id: str, limit: int | None = None) -> List[Message]:
        state = self._conversations.get(session_id)
        if state is None:
            return []
        return _tail(state.messages, limit)

    async def delete_conversation(self, session_id: str) -> None:
        self._conversations.pop(session_id, None)

    async def get_metadata(self, session_id: str) -> Dict[str, Any] | None:
        state = self._conversations.get(session_id)
        return dict(state.metadata) if state is not None else None

    async def update_metadata(
        self, session_id: str, metadata: Dict[str, Any]
    ) -> ConversationState:
        state = self._upsert(session_id)
        state.metadata = dict(metadata)
        return self._snapshot(state)


class RedisConversationRepository:
    """Conversation store on Redis.

    ``conversation:<id>:messages`` is a list of JSON-encoded messages (RPUSH keeps
    appends atomic and ordered); ``conversation:<id>:meta`` is a hash holding
    session_id, created_at, last_activity and the JSON metadata. Every write is a
    single MULTI/EXEC transaction.
    """

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int = 0) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    async def init(self) -> None:
        await self._redis.connect()

    async def shutdown(self) -> None:
        await self._redis.close()

    def _messages_key(self, session_id: str) -> str:
        return f"{CONVERSATION_KEY_PREFIX}{session_id}:messages"

    def _meta_key(self, session_id: str) -> str:
        return f"{CONVERSATION_KEY_PREFIX}{session_id}:meta"

    def _touch(self, session_id: str) -> List[Command]:
        meta = self._meta_key(session_id)
        now = utcnow().isoformat()
        return [
            ("hsetnx", (meta, "session_id", session_id)),
            ("hsetnx", (meta, "created_at", now)),
            ("hsetnx", (meta, "metadata", "{}")),
            ("hset", (meta, "last_activity", now)),
        ]

    def _expire(self, session_id: str) -> List[Command]:
        if self._ttl <= 0:
            return []
        return [
            ("expire", (self._meta_key(session_id), self._ttl)),
            ("expire", (self._messages_key(session_id), self._ttl)),
        ]

    async def _write(self, session_id: str, commands: List[Command]) -> None:
        replies = await self._redis.transaction(
            self._touch(session_id) + commands + self._expire(session_id)
        )
        if replies is None:
            raise PersistenceError(f"Could not write conversation {session_id}")

    def _decode_messages(self, session_id: str, raw: List[str]) -> List[Message]:
        messages: List[Message] = []
        for item in raw:
            try:
                messages.append(Message.from_dict(json.loads(item)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid message for %s: %s", session_id, e)
        return messages

    async def find_by_session_id(self, session_id: str) -> ConversationState | None:
        meta = await self._redis.hgetall(self._meta_key(session_id))
        if not meta:
            return None
        raw = await self._redis.lrange(self._messages_key(session_id), 0, -1)
        try:
            metadata = json.loads(meta.get("metadata") or "{}")
        except json.JSONDecodeError as e:
            logger.warning("Invalid metadata for %s: %s", session_id, e)
            metadata = {}
        now = utcnow()
        return ConversationState(
            session_id=session_id,
            messages=self._decode_messages(session_id, raw),
            metadata=metadata,
            created_at=_parse_ts(meta.get("created_at"), now),
            last_activity=_parse_ts(meta.get("last_activity"), now),
        )

    async def _load(self, session_id: str) -> ConversationState:
        state = await self.find_by_session_id(session_id)
        if state is None:
            raise PersistenceError(f"Conversation {session_id} not readable after write")
        return state

    async def create_conversation(
        self,
        session_id: str,
        messages: Sequence[Message] | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ConversationState:
        if await self._redis.exists(self._meta_key(session_id)):
            raise ConversationExistsError(session_id)
        commands: List[Command] = [
            ("hset", (self._meta_key(session_id), "metadata", json.dumps(metadata or {}))),
        ]
        if messages:
            commands.append(("rpush", (self._messages_key(session_id), *_encode(messages))))
        await self._write(session_id, commands)
        return await self._load(session_id)

    async def add_message(self, session_id: str, message: Message) -> ConversationState:
        return await self.add_messages(session_id, [message])

    async def add_messages(
        self, session_id: str, messages: Sequence[Message]
    ) -> ConversationState:
        commands: List[Command] = []
        if messages:
            commands.append(("rpush", (self._messages_key(session_id), *_encode(messages))))
        await self._write(session_id, commands)
        return await self._load(session_id)

    async def update_messages(
        self, session_id: str, messages: Sequence[Message]
    ) -> ConversationState:
        key = self._messages_key(session_id)
        commands: List[Command] = [("delete", (key,))]
        if messages:
            commands.append(("rpush", (key, *_encode(messages))))
        await self._write(session_id, commands)
        return await self._load(session_id)

    async def get_messages(self, session_id: str, limit: int | None = None) -> List[Message]:
        start = -limit if limit is not None and limit > 0 else 0
        raw = await self._redis.lrange(self._messages_key(session_id), start, -1)
        return self._decode_messages(session_id, raw)

    async def delete_conversation(self, session_id: str) -> None:
        ok = await self._redis.delete(
            self._messages_key(session_id), self._meta_key(session_id)
        )
        if not ok:
            raise PersistenceError(f"Could not delete conversation {session_id}")

    async def get_metadata(self, session_id: str) -> Dict[str, Any] | None:
        meta = await self._redis.hgetall(self._meta_key(session_id))
        if not meta:
            return None
        try:
            return json.loads(meta.get("metadata") or "{}")
        except json.JSONDecodeError as e:
            logger.warning("Invalid metadata for %s: %s", session_id, e)
            return {}

    async def update_metadata(
        self, session_id: str, metadata: Dict[str, Any]
    ) -> ConversationState:
        await self._write(
            session_id,
            [("hset", (self._meta_key(session_id), "metadata", json.dumps(metadata, default=str)))],
        )
        return await self._load(session_id)


def _encode(messages: Sequence[Message]) -> List[str]:
    return [json.dumps(m.to_dict()) for m in messages]


def _parse_ts(raw: str | None, default: datetime) -> datetime:
    if not raw:
        return default
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return default


def build_conversation_repository(settings: Settings) -> ConversationHistory:
    """Redis-backed store when REDIS_URL is set, in-memory otherwise."""
    redis_crud = get_redis_crud_service(settings)
    if redis_crud is None:
        return InMemoryConversationRepository()
    return RedisConversationRepository(
        redis_crud,
        ttl_seconds=settings.conversation_ttl_seconds,
    )
