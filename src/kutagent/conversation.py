"""
Conversation - the ordered history of one chat.

A conversation is append-only: messages are never reordered, removed or
edited once added. It is owned by a single loop run at a time and is not
safe to share between concurrent runs; every operator gets their own.
"""

import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from kutagent.types import Message, Role, ToolCall, ToolResult


@dataclass
class Conversation:
    """
    Append-only message history.

    Tool results are checked against the latest assistant message: each
    result must answer one of its calls, and each call is answered at
    most once.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    _messages: list[Message] = field(default_factory=list, repr=False)

    @classmethod
    def from_messages(cls, messages: Iterable[Message]) -> "Conversation":
        """Build a conversation by appending messages in order."""
        conversation = cls()
        for message in messages:
            conversation.append(message)
        return conversation

    def append(self, message: Message) -> Message:
        """Append a message, enforcing tool-result correlation."""
        if message.role == Role.TOOL:
            self._check_tool_result(message.tool_call_id)
        self._messages.append(message)
        return message

    def add_system_message(self, content: str) -> Message:
        return self.append(Message(role=Role.SYSTEM, content=content))

    def add_user_message(self, content: str) -> Message:
        return self.append(Message(role=Role.USER, content=content))

    def add_assistant_message(
        self,
        content: str = "",
        tool_calls: Iterable[ToolCall] = (),
    ) -> Message:
        """Add an assistant turn, optionally carrying tool-call requests."""
        return self.append(Message(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls),
        ))

    def add_tool_result(self, result: ToolResult) -> Message:
        """Add a tool-result message answering an outstanding call."""
        return self.append(Message(
            role=Role.TOOL,
            content=result.content,
            tool_call_id=result.tool_call_id,
            name=result.tool_name or None,
        ))

    def pending_tool_calls(self) -> list[ToolCall]:
        """Calls of the latest assistant message that have no result yet."""
        index = self._last_assistant_index()
        if index is None:
            return []
        answered = {
            m.tool_call_id for m in self._messages[index + 1:]
            if m.role == Role.TOOL
        }
        return [
            tc for tc in self._messages[index].tool_calls
            if tc.id not in answered
        ]

    def result_for(self, tool_call_id: str) -> Message | None:
        """Return the tool-result message answering the given call id."""
        for message in reversed(self._messages):
            if message.role == Role.TOOL and message.tool_call_id == tool_call_id:
                return message
        return None

    def to_dicts(self) -> list[dict[str, Any]]:
        """Render all messages in wire format."""
        return [m.to_dict() for m in self._messages]

    @property
    def messages(self) -> list[Message]:
        """A copy of the history; mutating it does not affect the conversation."""
        return list(self._messages)

    @property
    def last_message(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def _last_assistant_index(self) -> int | None:
        for i in range(len(self._messages) - 1, -1, -1):
            if self._messages[i].role == Role.ASSISTANT:
                return i
        return None

    def _check_tool_result(self, tool_call_id: str | None) -> None:
        index = self._last_assistant_index()
        if index is None:
            raise ValueError("Tool result without a preceding assistant message")
        trailing = self._messages[index + 1:]
        if any(m.role != Role.TOOL for m in trailing):
            raise ValueError("Tool results must directly follow the assistant message")
        outstanding = {tc.id for tc in self.pending_tool_calls()}
        if tool_call_id not in outstanding:
            raise ValueError(
                f"Tool result for unknown or already answered call: {tool_call_id!r}"
            )
