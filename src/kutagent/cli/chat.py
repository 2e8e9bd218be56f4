"""
Console chat front end.

Reads operator lines from stdin, runs one loop per line against a
conversation that lives as long as the process, and prints the answers.
Configuration comes from the environment once, at startup.
"""

import argparse
import logging
import os
import sys
from typing import Protocol, TextIO

from kutagent.config import AgentConfig
from kutagent.conversation import Conversation
from kutagent.deadline import DeadlineExceeded
from kutagent.llm import LLMError
from kutagent.loop import AgentLoop, AgentLoopError
from kutagent.tools import describe_arguments
from kutagent.types import ToolCall

logger = logging.getLogger(__name__)

USER_LABEL = "\u001b[94mYou\u001b[0m"
ASSISTANT_LABEL = "\u001b[93mOllama\u001b[0m"
TOOL_LABEL = "\u001b[91mTool\u001b[0m"


class User(Protocol):
    """The operator side of the chat."""

    def read_message(self) -> str | None: ...

    def write_message(self, text: str) -> None: ...

    def write_line(self, text: str) -> None: ...


class ConsoleUser:
    """Operator on a terminal. read_message returns None at end of input."""

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout

    def read_message(self) -> str | None:
        self.stdout.write(f"{USER_LABEL}: ")
        self.stdout.flush()
        line = self.stdin.readline()
        if line == "":
            return None
        return line.rstrip("\r\n")

    def write_message(self, text: str) -> None:
        self.stdout.write(f"{ASSISTANT_LABEL}: {text}\n")
        self.stdout.flush()

    def write_line(self, text: str) -> None:
        self.stdout.write(f"{text}\n")
        self.stdout.flush()

    def write_tool_call(self, tool_call: ToolCall) -> None:
        self.write_line(f"{TOOL_LABEL}:  {tool_call.name}({describe_arguments(tool_call.arguments)})")


class ChatSession:
    """
    One operator, one conversation, many turns.

    Hard failures from a run propagate and end the session.
    """

    def __init__(self, loop: AgentLoop, user: User, model: str) -> None:
        self.loop = loop
        self.user = user
        self.model = model
        self.conversation = Conversation()

    def run(self) -> None:
        self.user.write_line(f"Chat with {self.model}")
        while True:
            message = self.user.read_message()
            if message is None:
                break
            if not message.strip():
                continue
            self.conversation.add_user_message(message)
            result = self.loop.run(self.conversation)
            self.user.write_message(result.content)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the chat agent."""
    parser = argparse.ArgumentParser(description="KutAgent - chat with a local model that can use tools")
    parser.add_argument("--root", default=os.getcwd(),
                        help="Directory the file and shell tools are confined to")
    parser.add_argument("--model", help="Model name (overrides OLLAMA_MODEL)")
    parser.add_argument("--endpoint", help="Chat endpoint URL (overrides OLLAMA_ENDPOINT)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = AgentConfig.from_env()
    if args.model:
        config.provider.model = args.model
    if args.endpoint:
        config.provider.endpoint = args.endpoint

    user = ConsoleUser()
    loop = AgentLoop.create(args.root, config, on_tool_call=user.write_tool_call)
    session = ChatSession(loop, user, config.provider.model)

    try:
        session.run()
    except (AgentLoopError, LLMError, DeadlineExceeded) as e:
        logger.error(f"Run failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(file=sys.stderr)
        return 130
    finally:
        loop.client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
