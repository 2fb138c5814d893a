"""MCP tool surface models.

Field names follow Python conventions; aliases carry the camelCase
names used on the wire.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ProtocolModel(BaseModel):
    """Base for models serialized into JSON-RPC payloads."""

    model_config = ConfigDict(populate_by_name=True)

    def to_protocol(self) -> dict[str, Any]:
        """Serialize with wire aliases, dropping unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JSONSchema(ProtocolModel):
    """Object schema describing a tool's arguments."""

    type: Literal["object"] = "object"
    properties: dict[str, Any] = Field(default_factory=dict)
    required: list[str] | None = None


class Tool(ProtocolModel):
    """A callable tool advertised to the client."""

    name: str
    description: str | None = None
    input_schema: JSONSchema = Field(default_factory=JSONSchema, alias="inputSchema")


class TextContent(ProtocolModel):
    """Plain text returned to the LLM."""

    type: Literal["text"] = "text"
    text: str


class CallToolResult(ProtocolModel):
    """Outcome of a tool call.

    Execution failures are reported with `is_error=True` rather than as
    protocol errors, so the LLM can read what went wrong and recover.
    """

    content: list[TextContent]
    is_error: bool = Field(default=False, alias="isError")
