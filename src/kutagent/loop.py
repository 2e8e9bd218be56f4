"""
Agent Loop - resolves one user turn into one assistant answer.

The loop is:

1. Send the conversation and the tool catalog to the provider
2. If the reply requests tools: record the request, run each tool in
   order, record each result, goto 1
3. If the reply has text: that is the answer
4. If the reply says it is done without text: the answer is empty

Steps are bounded by max_steps and the whole run by a deadline, so a
provider that keeps asking for tools cannot run forever.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from kutagent.catalog import TOOL_CATALOG, ToolSchema
from kutagent.config import AgentConfig, LoopConfig
from kutagent.conversation import Conversation
from kutagent.deadline import Deadline
from kutagent.llm import OllamaClient
from kutagent.tools import SandboxedExecutor
from kutagent.types import Message, Role, ToolCall, ToolResult

logger = logging.getLogger(__name__)


class AgentLoopError(Exception):
    """The run could not produce an answer."""
    pass


class EmptyConversationError(AgentLoopError):
    """A run was started with no messages."""
    pass


class MaxStepsExceededError(AgentLoopError):
    """The provider never finished within the step bound."""

    def __init__(self, max_steps: int) -> None:
        super().__init__(f"max tool-calling steps exceeded ({max_steps})")
        self.max_steps = max_steps


@dataclass
class StepResult:
    """Result of a single provider round-trip."""
    step_number: int
    action: str
    content: str = ""
    tool_calls_made: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)


@dataclass
class LoopResult:
    """Final result of a successful run."""
    response: Message
    steps_taken: int
    step_results: list[StepResult] = field(default_factory=list)

    @property
    def content(self) -> str:
        return self.response.content


class AgentLoop:
    """
    Drives the provider and the executor for one conversation at a time.

    The loop owns the conversation for the duration of run() and only
    ever appends to it. Tool calls within a step run sequentially in the
    order the provider listed them.
    """

    def __init__(
        self,
        client: OllamaClient,
        executor: SandboxedExecutor,
        catalog: tuple[ToolSchema, ...] = TOOL_CATALOG,
        config: LoopConfig | None = None,
        on_tool_call: Callable[[ToolCall], None] | None = None,
    ) -> None:
        """Initialize the agent loop.

        Args:
            client: Provider client used for every request
            executor: Executes the requested tools
            catalog: Tool schemas advertised with every request
            config: Step bound and default run timeout
            on_tool_call: Optional callback invoked before each tool runs
        """
        self.client = client
        self.executor = executor
        self.catalog = catalog
        self.config = config or LoopConfig()
        self.on_tool_call = on_tool_call

    def run(self, conversation: Conversation, deadline: Deadline | None = None) -> LoopResult:
        """
        Resolve the conversation into the next assistant answer.

        The answer is appended to the conversation and returned.

        Raises:
            EmptyConversationError: If the conversation has no messages
            MaxStepsExceededError: If max_steps round-trips did not finish
            ProviderError: If any provider exchange fails
            DeadlineExceeded: If the run deadline elapses between steps
        """
        if len(conversation) == 0:
            raise EmptyConversationError("conversation must not be empty")

        if deadline is None:
            deadline = Deadline(self.config.run_timeout)

        step_results: list[StepResult] = []
        max_steps = self.config.max_steps

        for step in range(1, max_steps + 1):
            deadline.check()
            logger.info(f"Agent loop step {step}/{max_steps}")

            response = self.client.chat(conversation, self.catalog, deadline=deadline)

            if response.has_tool_calls:
                conversation.add_assistant_message(
                    content=response.content,
                    tool_calls=response.tool_calls,
                )
                results = self._run_tools(conversation, response.tool_calls, deadline)
                step_results.append(StepResult(
                    step_number=step,
                    action="tool_calls",
                    content=response.content,
                    tool_calls_made=len(results),
                    tool_results=results,
                ))
                continue

            if response.content:
                answer = conversation.append(Message(
                    role=Role.ASSISTANT,
                    content=response.content,
                ))
                step_results.append(StepResult(
                    step_number=step,
                    action="final_response",
                    content=response.content,
                ))
                return LoopResult(response=answer, steps_taken=step, step_results=step_results)

            if response.done:
                logger.debug(f"Provider finished without content (reason: {response.done_reason!r})")
                answer = conversation.add_assistant_message(content="")
                step_results.append(StepResult(step_number=step, action="done_empty"))
                return LoopResult(response=answer, steps_taken=step, step_results=step_results)

            step_results.append(StepResult(step_number=step, action="no_progress"))

        logger.warning(f"Agent loop hit max_steps limit ({max_steps})")
        raise MaxStepsExceededError(max_steps)

    def _run_tools(
        self,
        conversation: Conversation,
        tool_calls: list[ToolCall],
        deadline: Deadline,
    ) -> list[ToolResult]:
        results = []
        for tool_call in tool_calls:
            if self.on_tool_call is not None:
                self.on_tool_call(tool_call)
            result = self.executor.execute(tool_call, deadline=deadline)
            conversation.add_tool_result(result)
            results.append(result)
        return results

    @classmethod
    def create(
        cls,
        root: str,
        config: AgentConfig | None = None,
        on_tool_call: Callable[[ToolCall], None] | None = None,
    ) -> "AgentLoop":
        """
        Factory method to create an AgentLoop with all dependencies.

        This is the recommended way to create an AgentLoop for typical use.
        """
        config = config or AgentConfig.from_env()
        return cls(
            client=OllamaClient(config.provider),
            executor=SandboxedExecutor(root, config.tools),
            config=config.loop,
            on_tool_call=on_tool_call,
        )
