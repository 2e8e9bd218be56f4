"""
KutAgent - a tool-calling chat agent for a local model.

The agent mediates between an operator, an Ollama-style chat provider and
six sandboxed local tools:

1. Message model: the append-only conversation sent on every request
2. Tool catalog: the fixed schemas advertised to the provider
3. Sandboxed executor: confined file access, bounded shell and HTTP fetch
4. Provider client: one request, one response, no retries
5. Agent loop: runs tools until the provider answers, at most max_steps times
"""

__version__ = "0.1.0"

from kutagent.catalog import TOOL_CATALOG, ToolSchema, get_tool_catalog
from kutagent.config import AgentConfig, LoopConfig, ProviderConfig, ToolConfig
from kutagent.conversation import Conversation
from kutagent.deadline import Deadline, DeadlineExceeded
from kutagent.llm import LLMError, OllamaClient, ProviderError, ProviderResponse
from kutagent.loop import (
    AgentLoop,
    AgentLoopError,
    EmptyConversationError,
    LoopResult,
    MaxStepsExceededError,
)
from kutagent.tools import SandboxedExecutor, ToolError
from kutagent.types import Message, Role, ToolCall, ToolResult

__all__ = [
    "AgentConfig",
    "AgentLoop",
    "AgentLoopError",
    "Conversation",
    "Deadline",
    "DeadlineExceeded",
    "EmptyConversationError",
    "LLMError",
    "LoopConfig",
    "LoopResult",
    "MaxStepsExceededError",
    "Message",
    "OllamaClient",
    "ProviderConfig",
    "ProviderError",
    "ProviderResponse",
    "Role",
    "SandboxedExecutor",
    "TOOL_CATALOG",
    "ToolCall",
    "ToolConfig",
    "ToolError",
    "ToolResult",
    "ToolSchema",
    "get_tool_catalog",
]
