"""
Content blocks carried by tool results, prompt messages and sampling messages.
Every block is tagged by its ``type`` field.
"""

import json
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from forge_mcp.error_handling.exceptions import ValidationError

logger = logging.getLogger(__name__)


class _Block(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    meta: Optional[Dict[str, Any]] = Field(default=None, alias="_meta")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TextContent(_Block):
    """Text content block."""
    type: Literal["text"] = "text"
    text: str


class ImageContent(_Block):
    """Image content block; ``data`` is base64."""
    type: Literal["image"] = "image"
    data: str
    mime_type: str = Field(alias="mimeType")


class AudioContent(_Block):
    """Audio content block; ``data`` is base64."""
    type: Literal["audio"] = "audio"
    data: str
    mime_type: str = Field(alias="mimeType")


class ResourceLink(_Block):
    """Reference to a resource the client may read later."""
    type: Literal["resource_link"] = "resource_link"
    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class EmbeddedResource(_Block):
    """
    Embedded resource content.

    Accepts both the nested MCP form (``{"type": "resource", "resource": {...}}``)
    and the flat form (``{"type": "resource", "uri": ..., "blob": ...}``).
    """
    type: Literal["resource"] = "resource"
    uri: Optional[str] = None
    text: Optional[str] = None
    blob: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    resource: Optional[Dict[str, Any]] = None

    def model_post_init(self, __context: Any) -> None:
        if self.resource:
            self.uri = self.uri or self.resource.get("uri")
            self.text = self.text if self.text is not None else self.resource.get("text")
            self.blob = self.blob if self.blob is not None else self.resource.get("blob")
            self.mime_type = self.mime_type or self.resource.get("mimeType")


class ToolUseContent(_Block):
    """A model's request to run a tool, seen in sampling histories."""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(_Block):
    """The outcome of a ``tool_use`` request, sent back in the next user message."""
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = Field(alias="toolUseId")
    content: List[Dict[str, Any]] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")


ContentBlock = Annotated[
    Union[TextContent, ImageContent, AudioContent, ResourceLink, EmbeddedResource,
          ToolUseContent, ToolResultContent],
    Field(discriminator="type"),
]

_content_list_adapter = TypeAdapter(List[ContentBlock])


def parse_content(blocks: List[Dict[str, Any]]) -> List[Any]:
    """
    Decode a raw ``content`` array into content block models.

    Raises:
        ValidationError: If a block has an unknown type or is malformed
    """
    try:
        return _content_list_adapter.validate_python(blocks)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid content block: {e}", original_exception=e)


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def to_text(value: Any) -> str:
    """Render a tool or callback result as text: strings as-is, None as null, the rest as JSON."""
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
