import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Union

Role = Literal["user", "assistant"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """A persisted chat message. Only user and assistant messages are stored."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        raw_ts = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if raw_ts else utcnow()
        return cls(role=data["role"], content=data.get("content", ""), timestamp=timestamp)


@dataclass
class ConversationState:
    """Per-session conversation state (messages and opaque metadata)."""

    session_id: str
    messages: List[Message] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ToolDescriptor:
    """Static declaration of a capability advertised to the model."""

    name: str
    description: str
    input_schema: Dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    content: str


@dataclass(frozen=True)
class ResultEnvelope:
    """Uniform outcome of a tool invocation."""

    success: bool
    data: Any = None
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def ok(cls, data: Any = None) -> "ResultEnvelope":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None) -> "ResultEnvelope":
        return cls(success=False, data=data, error=error)


@dataclass(frozen=True)
class AssistantToolTurn:
    """Assistant turn that requested tools; lives only inside one chat turn."""

    text: str
    tool_calls: List[ToolCall]


@dataclass(frozen=True)
class ToolResultsTurn:
    results: List[ToolResult]


TranscriptItem = Union[Message, AssistantToolTurn, ToolResultsTurn]


@dataclass
class ModelResponse:
    """Normalized blocking completion: text blocks and/or tool-use blocks."""

    texts: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.texts)


@dataclass(frozen=True)
class StreamEvent:
    """One streaming delta: a text fragment, an assembled tool call, or end."""

    kind: Literal["text", "tool_use", "end"]
    text: str = ""
    tool_call: ToolCall | None = None

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(kind="text", text=text)

    @classmethod
    def tool_use(cls, call: ToolCall) -> "StreamEvent":
        return cls(kind="tool_use", tool_call=call)

    @classmethod
    def end(cls) -> "StreamEvent":
        return cls(kind="end")


@dataclass(frozen=True)
class ChatResult:
    response: str
    session_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"response": self.response, "session_id": self.session_id}
