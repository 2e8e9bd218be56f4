"""
Configuration for the agent system.

Values are read from environment variables once at startup and then
passed into the core as plain dataclasses. Nothing below the CLI calls
os.getenv per request.
"""

import os
from dataclasses import dataclass, field
from typing import Any

DEFAULT_MODEL = "qwen3-16k"
DEFAULT_ENDPOINT = "http://localhost:11434/api/chat"

ONE_MIB = 1 << 20


@dataclass
class ProviderConfig:
    """Configuration for the chat provider client."""
    model: str = DEFAULT_MODEL
    endpoint: str = DEFAULT_ENDPOINT
    options: dict[str, Any] | None = None

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Load configuration from environment variables."""
        return cls(
            model=os.getenv("OLLAMA_MODEL") or DEFAULT_MODEL,
            endpoint=os.getenv("OLLAMA_ENDPOINT") or DEFAULT_ENDPOINT,
        )


@dataclass
class ToolConfig:
    """
    Resource bounds for the sandboxed tools.

    These are hard limits, not hints: every tool enforces them before
    returning anything to the provider.
    """
    max_file_bytes: int = ONE_MIB
    max_output_bytes: int = ONE_MIB
    max_list_entries: int = 5000
    shell_timeout: float = 30.0
    fetch_timeout: float = 20.0
    user_agent: str = "KutAgent/1.0 (+https://example.com)"


@dataclass
class LoopConfig:
    """
    Configuration for the orchestration loop.

    max_steps bounds provider round-trips per run; run_timeout is the
    overall deadline applied when the caller does not supply one.
    """
    max_steps: int = 5
    run_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_steps=int(os.getenv("AGENT_MAX_STEPS", "5")),
            run_timeout=float(os.getenv("AGENT_RUN_TIMEOUT", "60")),
        )


@dataclass
class AgentConfig:
    """Combined configuration for the entire agent."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load all configuration from environment variables."""
        return cls(
            provider=ProviderConfig.from_env(),
            tools=ToolConfig(),
            loop=LoopConfig.from_env(),
        )
