"""
Tool Catalog - the fixed set of tools advertised to the provider.

The schemas are only used to describe capabilities. Each tool handler
checks its own arguments; nothing here is enforced at runtime.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ToolSchema:
    """Static description of one tool: name, description, parameter shape."""
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required", []))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the provider's function-tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _object_schema(
    properties: dict[str, Any],
    required: list[str] | None = None,
) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
    }
    if required:
        schema["required"] = required
    schema["additionalProperties"] = False
    return schema


TOOL_CATALOG: tuple[ToolSchema, ...] = (
    ToolSchema(
        name="time_now",
        description="Return the current local time in RFC3339 format",
        parameters=_object_schema({}),
    ),
    ToolSchema(
        name="read_file",
        description=(
            "Read a text file from the current project directory and return "
            "its contents. Input: { path: string }"
        ),
        parameters=_object_schema(
            {"path": {"type": "string"}},
            required=["path"],
        ),
    ),
    ToolSchema(
        name="list_files",
        description=(
            "List all files under the given directory path recursively, "
            "returning full paths. Input: { path: string }"
        ),
        parameters=_object_schema(
            {"path": {"type": "string"}},
            required=["path"],
        ),
    ),
    ToolSchema(
        name="edit_file",
        description=(
            "Create or overwrite a text file at the given path with provided "
            "content. Input: { path: string, content: string }"
        ),
        parameters=_object_schema(
            {
                "path": {"type": "string"},
                "content": {"type": "string"},
            },
            required=["path", "content"],
        ),
    ),
    ToolSchema(
        name="run_shell",
        description=(
            "Run an arbitrary shell command and return its output, stderr, and "
            "exit code. Input: { command: string, timeout_sec?: integer }"
        ),
        parameters=_object_schema(
            {
                "command": {"type": "string"},
                "timeout_sec": {"type": "integer"},
            },
            required=["command"],
        ),
    ),
    ToolSchema(
        name="fetch_url",
        description=(
            "Fetch the content of a webpage via HTTP GET. "
            "Input: { url: string, timeout_sec?: integer }"
        ),
        parameters=_object_schema(
            {
                "url": {"type": "string"},
                "timeout_sec": {"type": "integer"},
            },
            required=["url"],
        ),
    ),
)


def get_tool_catalog() -> tuple[ToolSchema, ...]:
    """Return the ordered catalog of every supported tool."""
    return TOOL_CATALOG


def catalog_to_dicts(catalog: tuple[ToolSchema, ...] = TOOL_CATALOG) -> list[dict[str, Any]]:
    """Render a catalog as the wire `tools` array."""
    return [schema.to_dict() for schema in catalog]
