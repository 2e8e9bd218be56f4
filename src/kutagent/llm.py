"""
Provider Protocol Client - one request, one response.

Talks to an Ollama-style chat endpoint (POST /api/chat) with the whole
conversation and the tool catalog, and parses the reply into text and
tool calls. There are no retries and no streaming: every failure is
raised to the caller, which ends the current run.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from kutagent.catalog import TOOL_CATALOG, ToolSchema, catalog_to_dicts
from kutagent.config import ProviderConfig
from kutagent.conversation import Conversation
from kutagent.deadline import Deadline
from kutagent.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Error from the LLM client."""
    pass


class ProviderError(LLMError):
    """
    The exchange with the provider failed.

    status_code and body are set when the provider answered at all, so
    the caller can show what went wrong.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class ProviderRequest:
    """The request body sent to the provider."""
    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    stream: bool = False
    options: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
        }
        if self.tools:
            result["tools"] = self.tools
        result["stream"] = self.stream
        if self.options:
            result["options"] = self.options
        return result


def build_request(
    conversation: Conversation,
    tools: tuple[ToolSchema, ...] = TOOL_CATALOG,
    model: str = "",
    options: dict[str, Any] | None = None,
) -> ProviderRequest:
    """Build a request from nothing but the conversation and the catalog."""
    return ProviderRequest(
        model=model,
        messages=conversation.to_dicts(),
        tools=catalog_to_dicts(tools),
        stream=False,
        options=options,
    )


class ProviderResponse:
    """
    Response from a chat request.

    Wraps the decoded body and gives convenient access to the reply
    text and any tool calls.
    """

    def __init__(
        self,
        message: Message,
        done: bool = False,
        done_reason: str = "",
        model: str = "",
        created_at: str = "",
        raw_response: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.done = done
        self.done_reason = done_reason
        self.model = model
        self.created_at = created_at
        self.raw_response = raw_response or {}

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self.message.tool_calls)

    @property
    def has_tool_calls(self) -> bool:
        """Check if the response includes tool calls."""
        return len(self.message.tool_calls) > 0

    @classmethod
    def from_api_response(cls, data: Any) -> "ProviderResponse":
        """
        Parse a decoded response body.

        Raises ProviderError if the body does not have the expected shape.
        """
        if not isinstance(data, dict):
            raise ProviderError(f"malformed response: expected object, got {type(data).__name__}")
        message = data.get("message") or {}
        if not isinstance(message, dict):
            raise ProviderError("malformed response: message is not an object")

        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ProviderError("malformed response: message content is not a string")

        raw_calls = message.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise ProviderError("malformed response: tool_calls is not a list")
        tool_calls = _unique_ids([_parse_tool_call(tc, i) for i, tc in enumerate(raw_calls)])

        try:
            role = Role(message.get("role") or Role.ASSISTANT.value)
        except ValueError as e:
            raise ProviderError(f"malformed response: unknown role {message.get('role')!r}") from e

        return cls(
            message=Message(role=role, content=content, tool_calls=tool_calls),
            done=bool(data.get("done", False)),
            done_reason=data.get("done_reason") or "",
            model=data.get("model") or "",
            created_at=data.get("created_at") or "",
            raw_response=data,
        )

    def __repr__(self) -> str:
        return (
            f"ProviderResponse(content={self.content!r}, "
            f"tool_calls={len(self.message.tool_calls)}, done={self.done})"
        )


def _parse_tool_call(raw: Any, index: int) -> ToolCall:
    if not isinstance(raw, dict) or not isinstance(raw.get("function"), dict):
        raise ProviderError(f"malformed response: tool call {index} has no function")
    function = raw["function"]
    name = function.get("name")
    if not isinstance(name, str) or not name:
        raise ProviderError(f"malformed response: tool call {index} has no name")

    # Ollama sends an object; OpenAI-compatible servers send a JSON string.
    arguments = function.get("arguments")
    if arguments is None or arguments == "":
        arguments = {}
    elif isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            arguments = {"raw": arguments}
    if not isinstance(arguments, dict):
        arguments = {"raw": arguments}

    call_id = raw.get("id")
    if not isinstance(call_id, str) or not call_id:
        call_id = f"call_{index}"

    return ToolCall(id=call_id, name=name, arguments=arguments)


def _unique_ids(calls: list[ToolCall]) -> tuple[ToolCall, ...]:
    """Rename repeated ids so every result can be matched to one call."""
    seen: set[str] = set()
    unique = []
    for index, call in enumerate(calls):
        if call.id in seen:
            call = ToolCall(id=f"{call.id}_{index}", name=call.name, arguments=call.arguments)
        seen.add(call.id)
        unique.append(call)
    return tuple(unique)


class OllamaClient:
    """
    Synchronous client for an Ollama-style chat endpoint.

    Each chat() call is exactly one POST. The time it may take is bounded
    by the deadline passed in, not by a client-wide timeout.
    """

    def __init__(
        self,
        config: ProviderConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Provider configuration (model, endpoint, options)
            http_client: Optional preconfigured httpx client, e.g. with a
                mock transport
        """
        self.config = config or ProviderConfig.from_env()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client()

    def chat(
        self,
        conversation: Conversation,
        tools: tuple[ToolSchema, ...] = TOOL_CATALOG,
        deadline: Deadline | None = None,
    ) -> ProviderResponse:
        """
        Send one chat request and parse the reply.

        Args:
            conversation: The full history so far
            tools: The catalog to advertise
            deadline: Bounds the whole exchange; None means no timeout

        Returns:
            ProviderResponse with the assistant's reply

        Raises:
            ProviderError: On serialization, transport, status or decoding failure
        """
        request = build_request(
            conversation,
            tools,
            model=self.config.model,
            options=self.config.options,
        )
        try:
            payload = json.dumps(request.to_dict())
        except (TypeError, ValueError) as e:
            raise ProviderError(f"marshal request: {e}") from e

        timeout = deadline.remaining() if deadline is not None else None
        if timeout is not None and timeout <= 0:
            raise ProviderError("request provider: deadline exceeded before sending")

        logger.debug(f"Sending chat request with {len(conversation)} messages to {self.config.endpoint}")

        try:
            response = self._client.post(
                self.config.endpoint,
                content=payload,
                headers={"Content-Type": "application/json"},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Provider request timed out: {e}")
            raise ProviderError(f"request provider: timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Provider request failed: {e}")
            raise ProviderError(f"request provider: {e}") from e

        body = response.text
        if not response.is_success:
            logger.error(f"HTTP error: {response.status_code} - {body}")
            raise ProviderError(
                f"provider error: status {response.status_code}, body: {body}",
                status_code=response.status_code,
                body=body,
            )

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ProviderError(
                f"decode response: {e}; body: {body}",
                status_code=response.status_code,
                body=body,
            ) from e

        try:
            return ProviderResponse.from_api_response(data)
        except ProviderError as e:
            e.status_code = response.status_code
            e.body = body
            raise

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "OllamaClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
