import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Tuple, Union

Role = Literal["user", "assistant", "system", "tool"]
Content = Union[str, List[Any]]

ROLE_ALIASES: Dict[str, str] = {"human": "user", "ai": "assistant"}


@dataclass(frozen=True)
class ToolCall:
    """A model-issued request to invoke a capability."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.arguments}

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass(frozen=True)
class Message:
    """One role-tagged turn of a conversation."""

    role: Role
    content: Content = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Build a Message from a request payload item ({role, content}).

        Unknown roles fall back to ``user``.
        """
        role = str(data.get("role") or "user").lower()
        role = ROLE_ALIASES.get(role, role)
        if role not in ("user", "assistant", "system", "tool"):
            role = "user"
        content = data.get("content")
        if content is None:
            content = ""
        return cls(role=role, content=content, tool_call_id=data.get("tool_call_id"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        return data

    def to_openai(self) -> Dict[str, Any]:
        """Render the message in chat-completions wire format."""
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            data["content"] = self.content or None
            data["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.role == "tool":
            data["tool_call_id"] = self.tool_call_id or ""
        return data


@dataclass
class SessionState:
    """Per-session conversation state (ordered messages, last access time)."""

    session_id: str
    last_accessed: float
    messages: List[Message] = field(default_factory=list)
