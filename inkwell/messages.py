"""Conversation data model: tagged message variants, sessions, todos, project metadata."""

import time
import uuid
from dataclasses import dataclass, field


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class ToolCall:
    name: str
    args: dict
    call_id: str = ""
    arguments_error: str | None = None

    def to_dict(self) -> dict:
        data = {"name": self.name, "args": self.args, "call_id": self.call_id}
        if self.arguments_error is not None:
            data["arguments_error"] = self.arguments_error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            name=data["name"],
            args=data.get("args", {}),
            call_id=data.get("call_id", ""),
            arguments_error=data.get("arguments_error"),
        )


@dataclass
class ToolResponse:
    name: str
    call_id: str
    result: str

    def to_dict(self) -> dict:
        return {"name": self.name, "call_id": self.call_id, "result": self.result}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolResponse":
        return cls(name=data["name"], call_id=data["call_id"], result=data["result"])


# -- Message variants ----------------------------------------------------------
#
# Every message has an id, a display text, a timestamp and free-form metadata.
# The variant decides the role and which structured parts it may carry.


@dataclass(kw_only=True)
class _BaseMessage:
    text: str = ""
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    metadata: dict = field(default_factory=dict)

    def _base_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass(kw_only=True)
class UserMessage(_BaseMessage):
    type = "user"
    role = "user"

    def to_dict(self) -> dict:
        return self._base_dict()


@dataclass(kw_only=True)
class ModelMessage(_BaseMessage):
    """Assistant output: optional text plus the tool calls it requested."""

    type = "model"
    role = "model"
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return data


@dataclass(kw_only=True)
class ToolResultsMessage(_BaseMessage):
    """The per-iteration system message collecting every tool response.

    ``text`` holds the streamed log lines shown to the user while the tools run.
    """

    type = "tool_results"
    role = "system"
    responses: list[ToolResponse] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["responses"] = [r.to_dict() for r in self.responses]
        return data


SYSTEM_KINDS = ("approval", "notice", "error", "stopped", "limit")


@dataclass(kw_only=True)
class SystemMessage(_BaseMessage):
    type = "system"
    role = "system"
    kind: str = "notice"

    def __post_init__(self):
        if self.kind not in SYSTEM_KINDS:
            raise ValueError(f"unknown system message kind {self.kind!r}")

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["kind"] = self.kind
        return data


Message = UserMessage | ModelMessage | ToolResultsMessage | SystemMessage


def message_from_dict(data: dict) -> Message:
    common = {
        "id": data["id"],
        "text": data.get("text", ""),
        "timestamp": data.get("timestamp", 0),
        "metadata": data.get("metadata", {}),
    }
    kind = data.get("type")
    if kind == "user":
        return UserMessage(**common)
    if kind == "model":
        calls = [ToolCall.from_dict(tc) for tc in data.get("tool_calls", [])]
        return ModelMessage(tool_calls=calls, **common)
    if kind == "tool_results":
        responses = [ToolResponse.from_dict(r) for r in data.get("responses", [])]
        return ToolResultsMessage(responses=responses, **common)
    if kind == "system":
        return SystemMessage(kind=data.get("kind", "notice"), **common)
    raise ValueError(f"unknown message type {kind!r}")


def has_tool_calls(message: Message) -> bool:
    return isinstance(message, ModelMessage) and bool(message.tool_calls)


# -- Session data --------------------------------------------------------------


TODO_STATUSES = ("pending", "done")


@dataclass
class TodoItem:
    id: str
    text: str
    status: str = "pending"

    @property
    def done(self) -> bool:
        return self.status == "done"

    def to_dict(self) -> dict:
        return {"id": self.id, "text": self.text, "status": self.status}

    @classmethod
    def from_dict(cls, data: dict) -> "TodoItem":
        return cls(id=data["id"], text=data["text"], status=data.get("status", "pending"))


DEFAULT_TITLE = "New chat"
TITLE_LENGTH = 15


@dataclass
class ConversationSession:
    id: str
    project_id: str
    title: str = DEFAULT_TITLE
    messages: list = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    last_modified: int = field(default_factory=now_ms)

    def find(self, message_id: str) -> Message | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "todos": [t.to_dict() for t in self.todos],
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationSession":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            title=data.get("title", DEFAULT_TITLE),
            messages=[message_from_dict(m) for m in data.get("messages", [])],
            todos=[TodoItem.from_dict(t) for t in data.get("todos", [])],
            last_modified=data.get("last_modified", 0),
        )


def title_from_text(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text or DEFAULT_TITLE


PROJECT_FIELDS = {
    "name": str,
    "description": str,
    "genre": str,
    "words_per_chapter": int,
    "target_chapters": int,
}


@dataclass
class ProjectMeta:
    id: str
    name: str
    description: str = ""
    genre: str = ""
    words_per_chapter: int | None = None
    target_chapters: int | None = None
    created_at: int = field(default_factory=now_ms)
    last_modified: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "genre": self.genre,
            "words_per_chapter": self.words_per_chapter,
            "target_chapters": self.target_chapters,
            "created_at": self.created_at,
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectMeta":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
