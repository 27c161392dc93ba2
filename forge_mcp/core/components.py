"""
Component definitions for forge-mcp providers.
This module provides the Tool, Resource, ResourceTemplate and Prompt types
that providers hold and transforms relabel.
"""

import asyncio
import base64
import dataclasses
import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Union
from urllib.parse import unquote_plus

from forge_mcp.core.utils import call_maybe_async
from forge_mcp.error_handling.exceptions import ToolTimeoutError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Icon:
    """Icon shown by clients next to a server, tool or prompt."""
    src: str
    mime_type: Optional[str] = None
    sizes: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"src": self.src}
        if self.mime_type:
            data["mimeType"] = self.mime_type
        if self.sizes:
            data["sizes"] = self.sizes
        return data

    @classmethod
    def from_dict(cls, data: dict):
        return cls(src=data["src"], mime_type=data.get("mimeType"), sizes=data.get("sizes"))


@dataclass
class AppConfig:
    """UI metadata published under ``_meta.ui``."""
    resource_uri: Optional[str] = None
    visibility: Optional[List[str]] = None
    domain: Optional[str] = None
    prefers_border: Optional[bool] = None
    csp: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.resource_uri is not None:
            data["resourceUri"] = self.resource_uri
        if self.visibility is not None:
            data["visibility"] = self.visibility
        if self.domain is not None:
            data["domain"] = self.domain
        if self.prefers_border is not None:
            data["prefersBorder"] = self.prefers_border
        if self.csp is not None:
            data["csp"] = self.csp
        return data


def _meta_with_ui(meta: Optional[Dict[str, Any]], app: Optional[AppConfig]) -> Optional[Dict[str, Any]]:
    if app is None:
        return meta
    merged = dict(meta or {})
    merged["ui"] = app.to_dict()
    return merged


@dataclass
class Tool:
    """Tool definition."""
    name: str
    fn: Callable[[Dict[str, Any]], Any]
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    output_schema: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    title: Optional[str] = None
    icons: Optional[List[Icon]] = None
    version: Optional[str] = None
    exclude_args: Set[str] = field(default_factory=set)
    sequential: bool = False
    timeout: Optional[float] = None
    app: Optional[AppConfig] = None
    meta: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return f"tool:{self.name}"

    def published_input_schema(self) -> Dict[str, Any]:
        """Input schema with excluded arguments pruned from properties and required."""
        schema = dict(self.input_schema or {})
        if not self.exclude_args:
            return schema
        if isinstance(schema.get("properties"), dict):
            schema["properties"] = {
                k: v for k, v in schema["properties"].items() if k not in self.exclude_args
            }
        if isinstance(schema.get("required"), list):
            schema["required"] = [r for r in schema["required"] if r not in self.exclude_args]
        return schema

    @property
    def published_meta(self) -> Optional[Dict[str, Any]]:
        return _meta_with_ui(self.meta, self.app)

    def renamed(self, name: str) -> "Tool":
        return dataclasses.replace(self, name=name)

    async def invoke(self, arguments: Dict[str, Any]) -> Any:
        """
        Run the tool function, enforcing ``timeout`` when set.

        Raises:
            ToolTimeoutError: If the tool runs longer than ``timeout`` seconds
        """
        if not self.timeout or self.timeout <= 0:
            return await call_maybe_async(self.fn, arguments)

        if inspect.iscoroutinefunction(self.fn):
            pending = self.fn(arguments)
        else:
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, self.fn, arguments)
        try:
            result = await asyncio.wait_for(pending, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(
                f"Tool '{self.name}' execution timed out after {self.timeout:g}s",
                original_exception=e,
            )
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class ResourceContent:
    """Content returned by a resource read."""
    uri: str
    data: Union[str, bytes]
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"uri": self.uri}
        if self.mime_type:
            data["mimeType"] = self.mime_type
        if isinstance(self.data, (bytes, bytearray)):
            data["blob"] = base64.b64encode(bytes(self.data)).decode("ascii")
        else:
            data["text"] = self.data
        return data


def coerce_resource_content(uri: str, value: Any, mime_type: Optional[str]) -> ResourceContent:
    """Turn whatever a resource provider returned into a ResourceContent."""
    if isinstance(value, ResourceContent):
        if not value.uri:
            value = dataclasses.replace(value, uri=uri)
        if value.mime_type is None and mime_type:
            value = dataclasses.replace(value, mime_type=mime_type)
        return value
    if isinstance(value, (bytes, bytearray)):
        return ResourceContent(uri=uri, data=bytes(value), mime_type=mime_type or "application/octet-stream")
    if isinstance(value, str):
        return ResourceContent(uri=uri, data=value, mime_type=mime_type or "text/plain")
    return ResourceContent(uri=uri, data=json.dumps(value), mime_type=mime_type or "application/json")


@dataclass
class Resource:
    """Resource definition."""
    uri: str
    name: str
    provider: Callable[[Dict[str, Any]], Any]
    description: Optional[str] = None
    mime_type: Optional[str] = None
    title: Optional[str] = None
    icons: Optional[List[Icon]] = None
    version: Optional[str] = None
    app: Optional[AppConfig] = None
    meta: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        # ui:// resources are MCP app widgets
        if self.mime_type is None and self.uri.startswith("ui://"):
            self.mime_type = "text/html;profile=mcp-app"

    @property
    def key(self) -> str:
        return f"resource:{self.uri}"

    @property
    def published_meta(self) -> Optional[Dict[str, Any]]:
        return _meta_with_ui(self.meta, self.app)

    def with_uri(self, uri: str) -> "Resource":
        return dataclasses.replace(self, uri=uri)

    async def read(self, params: Optional[Dict[str, Any]] = None) -> ResourceContent:
        value = await call_maybe_async(self.provider, params or {})
        return coerce_resource_content(self.uri, value, self.mime_type)


_PLACEHOLDER = re.compile(r"\{([^}]+)\}")


@dataclass
class ResourceTemplate:
    """
    Resource template definition.

    Supports a subset of RFC 6570: ``{var}`` matches a single path segment,
    ``{var*}`` matches anything including slashes and ``{?a,b}`` matches an
    optional query string.
    """
    uri_template: str
    name: str
    provider: Callable[[Dict[str, Any]], Any]
    description: Optional[str] = None
    mime_type: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    icons: Optional[List[Icon]] = None
    version: Optional[str] = None
    app: Optional[AppConfig] = None
    meta: Optional[Dict[str, Any]] = None
    _regex: Any = field(default=None, init=False, repr=False, compare=False)
    _path_params: List[str] = field(default_factory=list, init=False, repr=False, compare=False)
    _query_params: List[str] = field(default_factory=list, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.mime_type is None and self.uri_template.startswith("ui://"):
            self.mime_type = "text/html;profile=mcp-app"
        self._compile()

    def _compile(self) -> None:
        pattern = ""
        pos = 0
        self._path_params = []
        self._query_params = []
        for match in _PLACEHOLDER.finditer(self.uri_template):
            pattern += re.escape(self.uri_template[pos:match.start()])
            body = match.group(1)
            if body.startswith("?"):
                self._query_params.extend(p.strip() for p in body[1:].split(",") if p.strip())
                pattern += r"(?:\?(?P<__query>[^#]*))?"
            elif body.endswith("*"):
                name = body[:-1]
                self._path_params.append(name)
                pattern += f"(?P<{self._group(name)}>.+)"
            else:
                self._path_params.append(body)
                pattern += f"(?P<{self._group(body)}>[^/?#]+)"
            pos = match.end()
        pattern += re.escape(self.uri_template[pos:])
        self._regex = re.compile(f"^{pattern}$")

    @staticmethod
    def _group(name: str) -> str:
        return "p_" + re.sub(r"\W", "_", name)

    @property
    def key(self) -> str:
        return f"template:{self.uri_template}"

    @property
    def published_meta(self) -> Optional[Dict[str, Any]]:
        return _meta_with_ui(self.meta, self.app)

    def with_uri_template(self, uri_template: str) -> "ResourceTemplate":
        return dataclasses.replace(self, uri_template=uri_template)

    def match(self, uri: str) -> Optional[Dict[str, str]]:
        """Return the URL-decoded parameters if ``uri`` matches, else None."""
        found = self._regex.match(uri)
        if not found:
            return None
        params = {name: unquote_plus(found.group(self._group(name))) for name in self._path_params}
        query = found.groupdict().get("__query")
        if query and self._query_params:
            for pair in query.split("&"):
                key, sep, value = pair.partition("=")
                if sep and key in self._query_params:
                    params[key] = unquote_plus(value)
        return params

    async def read(self, uri: str, params: Optional[Dict[str, Any]] = None) -> ResourceContent:
        matched = self.match(uri)
        merged: Dict[str, Any] = dict(matched or {})
        merged.update(params or {})
        value = await call_maybe_async(self.provider, merged)
        return coerce_resource_content(uri, value, self.mime_type)


@dataclass
class PromptArgument:
    name: str
    description: Optional[str] = None
    required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "required": self.required}
        if self.description:
            data["description"] = self.description
        return data


@dataclass
class PromptMessage:
    role: str
    content: Union[str, Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, dict):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": {"type": "text", "text": self.content}}


@dataclass
class PromptResult:
    messages: List[PromptMessage]
    description: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


@dataclass
class Prompt:
    """Prompt definition."""
    name: str
    generator: Callable[[Dict[str, Any]], Any]
    description: Optional[str] = None
    arguments: List[PromptArgument] = field(default_factory=list)
    title: Optional[str] = None
    icons: Optional[List[Icon]] = None
    version: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return f"prompt:{self.name}"

    def renamed(self, name: str) -> "Prompt":
        return dataclasses.replace(self, name=name)

    async def render(self, arguments: Optional[Dict[str, Any]] = None) -> PromptResult:
        """
        Run the generator with ``arguments``.

        Raises:
            ValidationError: If a required argument is missing
        """
        arguments = arguments or {}
        missing = [a.name for a in self.arguments if a.required and a.name not in arguments]
        if missing:
            raise ValidationError(f"Missing required arguments for prompt '{self.name}': {', '.join(missing)}")

        value = await call_maybe_async(self.generator, arguments)
        if isinstance(value, PromptResult):
            result = value
        elif isinstance(value, str):
            result = PromptResult(messages=[PromptMessage(role="user", content=value)])
        else:
            result = PromptResult(messages=[
                m if isinstance(m, PromptMessage) else PromptMessage(role=m.get("role", "user"), content=m["content"])
                for m in value
            ])
        if result.description is None:
            result.description = self.description
        if result.meta is None:
            result.meta = self.meta
        return result
