"""
Core types for the agent system.

These types represent the data that flows between the operator, the
provider and the sandboxed tools. They are plain containers: no I/O,
no validation beyond what is needed to round-trip the wire format.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

# A loosely-typed argument value as decoded from the provider's JSON.
JSONValue = Union[str, int, float, bool, None, list[Any], dict[str, Any]]


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """
    A request from the provider to execute one local tool.

    Created from a provider response, consumed exactly once by the
    executor. Its outcome comes back as a tool-result message.
    """
    id: str
    name: str
    arguments: dict[str, JSONValue] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Wire form used when echoing the call back in history."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }


@dataclass(frozen=True)
class Message:
    """
    A single turn in the conversation.

    Assistant turns that only request tools may have empty content.
    Tool-result turns carry the id and name of the call they answer.
    """
    role: Role
    content: str = ""
    tool_call_id: str | None = None
    name: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to the provider wire format, dropping empty fields."""
        result: dict[str, Any] = {"role": self.role.value}
        if self.content:
            result["content"] = self.content
        if self.tool_call_id:
            result["tool_call_id"] = self.tool_call_id
        if self.name:
            result["name"] = self.name
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from the provider wire format."""
        calls = tuple(
            ToolCall(
                id=tc.get("id", ""),
                name=tc["function"]["name"],
                arguments=tc["function"].get("arguments") or {},
            )
            for tc in data.get("tool_calls") or []
        )
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            tool_calls=calls,
        )


@dataclass
class ToolResult:
    """
    The result of executing a tool.

    Failed executions still produce a result: the error text is the
    content, so the provider can see it and try again.
    """
    tool_call_id: str
    content: str
    success: bool = True
    error: str | None = None
    tool_name: str = ""
