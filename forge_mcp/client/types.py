"""
Result models returned by the client.
This module provides pydantic models for the replies of every MCP method the
client issues. Unknown fields are kept so servers may extend their replies.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from forge_mcp.error_handling.exceptions import ValidationError

T = TypeVar("T")


class _Result(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", arbitrary_types_allowed=True)

    meta: Optional[Dict[str, Any]] = Field(default=None, alias="_meta")


class CallToolResult(_Result):
    """Decoded ``tools/call`` reply."""
    content: List[Any]
    structured_content: Optional[Any] = Field(default=None, alias="structuredContent")
    is_error: bool = Field(default=False, alias="isError")
    data: Optional[Any] = None

    @property
    def text(self) -> Optional[str]:
        """Text of the first text block, if any."""
        for block in self.content:
            if getattr(block, "type", None) == "text":
                return block.text
        return None

    def data_as(self, tp: Type[T]) -> T:
        """
        Convert ``data`` to ``tp``.

        A ``{"result": value}`` wrapper is looked through when the wrapper
        itself does not fit ``tp``.

        Raises:
            ValidationError: If the data cannot be converted
        """
        adapter = TypeAdapter(tp)
        try:
            return adapter.validate_python(self.data)
        except PydanticValidationError as e:
            if isinstance(self.data, dict) and list(self.data) == ["result"]:
                try:
                    return adapter.validate_python(self.data["result"])
                except PydanticValidationError:
                    pass
            raise ValidationError(f"Structured data does not match {tp!r}: {e}", original_exception=e)


class ToolInfo(_Result):
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="outputSchema")
    icons: Optional[List[Dict[str, Any]]] = None


class ResourceInfo(_Result):
    uri: str
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    icons: Optional[List[Dict[str, Any]]] = None


class ResourceTemplateInfo(_Result):
    uri_template: str = Field(alias="uriTemplate")
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    icons: Optional[List[Dict[str, Any]]] = None


class PromptInfo(_Result):
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    arguments: List[Dict[str, Any]] = Field(default_factory=list)
    icons: Optional[List[Dict[str, Any]]] = None


class ListToolsResult(_Result):
    tools: List[ToolInfo] = Field(default_factory=list)


class ListResourcesResult(_Result):
    resources: List[ResourceInfo] = Field(default_factory=list)


class ListResourceTemplatesResult(_Result):
    resource_templates: List[ResourceTemplateInfo] = Field(default_factory=list, alias="resourceTemplates")


class ListPromptsResult(_Result):
    prompts: List[PromptInfo] = Field(default_factory=list)


class ResourceContents(_Result):
    uri: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    text: Optional[str] = None
    blob: Optional[str] = None


class ReadResourceResult(_Result):
    contents: List[ResourceContents] = Field(default_factory=list)


class PromptMessageInfo(_Result):
    role: str
    content: Any


class GetPromptResult(_Result):
    description: Optional[str] = None
    messages: List[PromptMessageInfo] = Field(default_factory=list)


class Completion(_Result):
    values: List[str] = Field(default_factory=list)
    total: Optional[int] = None
    has_more: bool = Field(default=False, alias="hasMore")


class CompleteResult(_Result):
    completion: Completion = Field(default_factory=Completion)


class InitializeResult(_Result):
    protocol_version: str = Field(alias="protocolVersion")
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    server_info: Dict[str, Any] = Field(default_factory=dict, alias="serverInfo")
    instructions: Optional[str] = None


def parse_result(model: Type[BaseModel], payload: Any, method: str) -> Any:
    """
    Validate a raw reply against ``model``.

    Raises:
        ValidationError: If the reply does not have the expected shape
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"Invalid {method} response: expected an object")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {method} response: {e}", original_exception=e)
