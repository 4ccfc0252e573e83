import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A finished tool invocation requested by the model.

    ``arguments`` is kept as the exact JSON text the model streamed.
    """

    model_config = {"frozen": True}

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict:
        if not self.arguments.strip():
            return {}
        return json.loads(self.arguments)

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }


class Message(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(default_factory=_new_id)
    role: MessageRole
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    # Diagnostic notes are kept in the thread but never sent to the model.
    debug: bool = False

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @model_validator(mode="after")
    def _check_role_fields(self):
        if self.role == MessageRole.TOOL and not self.tool_call_id:
            raise ValueError("tool messages must reference a tool_call_id")
        if self.tool_calls:
            if self.role != MessageRole.ASSISTANT:
                raise ValueError("only assistant messages may carry tool_calls")
            if self.content:
                raise ValueError("assistant tool-call messages carry no content")
        return self

    @property
    def is_final_answer(self) -> bool:
        return self.role == MessageRole.ASSISTANT and not self.tool_calls

    def to_wire(self) -> dict:
        """Shape the message the way the completion service expects it."""
        wire: dict[str, Any] = {"role": self.role.value}
        if self.tool_calls:
            wire["content"] = None
            wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        else:
            wire["content"] = self.content or ""
        if self.tool_call_id is not None:
            wire["tool_call_id"] = self.tool_call_id
        return wire


class ToolResultStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ToolResult(BaseModel):
    """Outcome of executing one ToolCall."""

    model_config = {"frozen": True}

    tool_call_id: str
    tool_name: str
    status: ToolResultStatus = ToolResultStatus.PENDING
    payload: Any = None
    error_message: str | None = None
    timestamp: datetime = Field(default_factory=_now)

    @field_serializer('status')
    def serialize_status(self, status: ToolResultStatus, _info) -> str:
        return status.value

    @classmethod
    def success(cls, call: ToolCall, payload: Any) -> "ToolResult":
        return cls(
            tool_call_id=call.id, tool_name=call.name,
            status=ToolResultStatus.SUCCESS, payload=payload,
        )

    @classmethod
    def error(cls, call: ToolCall, message: str) -> "ToolResult":
        return cls(
            tool_call_id=call.id, tool_name=call.name,
            status=ToolResultStatus.ERROR, error_message=message,
        )

    @property
    def is_settled(self) -> bool:
        return self.status != ToolResultStatus.PENDING

    def to_message_content(self) -> str:
        """Render the content of the tool message sent back to the model."""
        if self.status == ToolResultStatus.ERROR:
            return f"Error executing {self.tool_name}: {self.error_message}"
        if self.status == ToolResultStatus.PENDING:
            return "No result available"
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, separators=(",", ":"), default=str)


class Thread(BaseModel):
    """A named conversation whose messages are only ever appended."""

    id: str = Field(default_factory=_new_id)
    name: str = "New Chat"
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = _now()

    @property
    def has_user_message(self) -> bool:
        return any(m.role == MessageRole.USER for m in self.messages)

    def wire_messages(self) -> list[dict]:
        return [m.to_wire() for m in self.messages if not m.debug]
