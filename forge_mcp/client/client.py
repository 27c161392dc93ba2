"""
MCP client.
This module provides the Client call engine: it issues MCP requests through
an injected transport, enforces call timeouts itself, forwards progress,
decodes structured tool results and answers requests the server sends back
(sampling, elicitation, roots).
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from cachetools import TTLCache

from forge_mcp.client.transports import LoopbackTransport, Transport
from forge_mcp.client.types import (
    CallToolResult,
    CompleteResult,
    GetPromptResult,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    PromptInfo,
    ReadResourceResult,
    ResourceInfo,
    ResourceTemplateInfo,
    ToolInfo,
    parse_result,
)
from forge_mcp.core import schema as schema_utils
from forge_mcp.core.app import DEFAULT_PROTOCOL_VERSION
from forge_mcp.core.content import parse_content
from forge_mcp.core.utils import call_maybe_async
from forge_mcp.error_handling.exceptions import Error, TransportError, ValidationError

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[float, Optional[float], Optional[str]], Any]
JsonCallback = Callable[[Dict[str, Any]], Any]
RootsCallback = Callable[[], List[Any]]

CLIENT_NAME = "forge-mcp-client"
CLIENT_VERSION = "0.1.0"


@dataclass
class CallToolOptions:
    """Per-call settings for ``call_tool_mcp``. A timeout of None or 0 waits forever."""
    meta: Optional[Dict[str, Any]] = None
    timeout: Optional[float] = None
    progress_handler: Optional[ProgressHandler] = None


class Client:
    """
    Transport-agnostic MCP client.

    ``transport`` may be any Transport, or a Server/MCPApp which is then
    wrapped in a LoopbackTransport. ``transport_factory`` lets ``new_()``
    build clients with their own transport; without it clones share this
    client's transport.
    """

    def __init__(self,
                 transport: Optional[Any] = None,
                 transport_factory: Optional[Callable[[], Transport]] = None,
                 sampling_callback: Optional[JsonCallback] = None,
                 elicitation_callback: Optional[JsonCallback] = None,
                 roots: Optional[Union[List[Any], RootsCallback]] = None,
                 schema_cache_size: int = 256,
                 schema_cache_ttl: float = 300.0):
        if transport is None and transport_factory is not None:
            transport = transport_factory()
        self.transport_factory = transport_factory
        self.sampling_callback = sampling_callback
        self.elicitation_callback = elicitation_callback
        self.roots_callback: Optional[RootsCallback] = None
        if roots is not None:
            self.set_roots_callback(roots)
        self.schema_cache_size = schema_cache_size
        self.schema_cache_ttl = schema_cache_ttl
        self._output_schemas: TTLCache = TTLCache(maxsize=schema_cache_size, ttl=schema_cache_ttl)
        self._progress_handlers: Dict[str, ProgressHandler] = {}
        self._progress_ids = itertools.count(1)
        self.initialize_result: Optional[InitializeResult] = None
        self.transport: Optional[Transport] = None
        self.set_transport(transport)

    # Wiring

    def set_transport(self, transport: Optional[Any]) -> None:
        if transport is not None and not hasattr(transport, "request"):
            transport = LoopbackTransport(transport)
        self.transport = transport
        if transport is not None and hasattr(transport, "set_notification_handler"):
            transport.set_notification_handler(self.handle_notification)

    def set_sampling_callback(self, callback: Optional[JsonCallback]) -> None:
        self.sampling_callback = callback

    def set_elicitation_callback(self, callback: Optional[JsonCallback]) -> None:
        self.elicitation_callback = callback

    def set_roots_callback(self, roots: Optional[Union[List[Any], RootsCallback]]) -> None:
        """Accepts a callable returning the roots, or a fixed list."""
        if roots is None or callable(roots):
            self.roots_callback = roots
        else:
            fixed = list(roots)
            self.roots_callback = lambda: fixed

    def is_connected(self) -> bool:
        return self.transport is not None and getattr(self.transport, "connected", True)

    def new_(self) -> "Client":
        """A fresh client with the same callbacks and transport source."""
        clone = Client(
            transport=None if self.transport_factory else self.transport,
            transport_factory=self.transport_factory,
            sampling_callback=self.sampling_callback,
            elicitation_callback=self.elicitation_callback,
            schema_cache_size=self.schema_cache_size,
            schema_cache_ttl=self.schema_cache_ttl,
        )
        clone.roots_callback = self.roots_callback
        return clone

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.close()
        self._progress_handlers.clear()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # Plumbing

    def _require_transport(self) -> Transport:
        if self.transport is None:
            raise TransportError("Client has no transport")
        return self.transport

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.debug(f"-> {method}")
        return await self._require_transport().request(method, params or {})

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        logger.debug(f"-> {method} (notification)")
        await self._require_transport().notify(method, params or {})

    @staticmethod
    async def _await_with_timeout(awaitable: Awaitable[Any], timeout: Optional[float], what: str) -> Any:
        if not timeout or timeout <= 0:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task not in done:
            task.cancel()
            raise TransportError(f"{what} timed out after {timeout:g}s")
        return task.result()

    # Server-initiated traffic

    def handle_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Answer a message the server sent to this client.

        Returns the registered callback's reply, ``{"roots": [...]}`` for
        ``roots/list``, or None for methods this client does not handle.
        """
        params = params or {}
        if method in ("sampling/request", "sampling/createMessage"):
            if self.sampling_callback is None:
                logger.warning(f"Server sent {method} but no sampling callback is set")
                return None
            return self.sampling_callback(params)
        if method in ("elicitation/request", "elicitation/create"):
            if self.elicitation_callback is None:
                logger.warning(f"Server sent {method} but no elicitation callback is set")
                return None
            return self.elicitation_callback(params)
        if method == "roots/list":
            roots = self.roots_callback() if self.roots_callback is not None else []
            return {"roots": roots}
        if method == "notifications/progress":
            handler = self._progress_handlers.get(params.get("progressToken"))
            if handler is None:
                return None
            return handler(float(params.get("progress", 0.0)), params.get("total"), params.get("message"))
        logger.debug(f"Unhandled server message {method}")
        return None

    async def _dispatch_embedded(self, notifications: Any) -> None:
        for note in notifications or []:
            if isinstance(note, dict) and note.get("method"):
                await call_maybe_async(self.handle_notification, note["method"], note.get("params") or {})

    # Lifecycle

    def client_capabilities(self) -> Dict[str, Any]:
        capabilities: Dict[str, Any] = {}
        if self.sampling_callback is not None:
            capabilities["sampling"] = {}
        if self.elicitation_callback is not None:
            capabilities["elicitation"] = {}
        if self.roots_callback is not None:
            capabilities["roots"] = {"listChanged": True}
        return capabilities

    async def initialize(self, protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> InitializeResult:
        raw = await self._request("initialize", {
            "protocolVersion": protocol_version,
            "capabilities": self.client_capabilities(),
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        })
        self.initialize_result = parse_result(InitializeResult, raw, "initialize")
        await self._notify("notifications/initialized")
        logger.info(f"Initialized with {self.initialize_result.server_info.get('name', 'server')} "
                    f"(protocol {self.initialize_result.protocol_version})")
        return self.initialize_result

    async def ping(self) -> bool:
        await self._request("ping")
        return True

    # Tools

    async def list_tools_mcp(self) -> ListToolsResult:
        result = parse_result(ListToolsResult, await self._request("tools/list"), "tools/list")
        for tool in result.tools:
            if tool.output_schema:
                self._output_schemas[tool.name] = tool.output_schema
            else:
                self._output_schemas.pop(tool.name, None)
        return result

    async def list_tools(self) -> List[ToolInfo]:
        return (await self.list_tools_mcp()).tools

    async def call_tool_mcp(self,
                            name: str,
                            arguments: Optional[Dict[str, Any]] = None,
                            options: Optional[CallToolOptions] = None) -> CallToolResult:
        """
        Call a tool and decode its result without interpreting ``isError``.

        Raises:
            TransportError: If the call does not finish within ``options.timeout``
            ValidationError: If the reply has no ``content`` or its structured
                content does not match the tool's output schema
        """
        options = options or CallToolOptions()
        params: Dict[str, Any] = {"name": name, "arguments": arguments or {}}
        meta = dict(options.meta) if options.meta is not None else None

        handler = options.progress_handler
        token = None
        if handler is not None:
            token = f"progress-{next(self._progress_ids)}"
            meta = meta if meta is not None else {}
            meta.setdefault("progressToken", token)
            self._progress_handlers[token] = handler
            await call_maybe_async(handler, 0.0, None, "request started")
        if meta is not None:
            params["_meta"] = meta

        try:
            response = await self._await_with_timeout(
                self._request("tools/call", params), options.timeout, f"Tool '{name}'"
            )
        finally:
            if token is not None:
                self._progress_handlers.pop(token, None)

        if not isinstance(response, dict) or "content" not in response:
            raise ValidationError(f"Invalid tools/call response for '{name}': missing content")
        if not isinstance(response["content"], list):
            raise ValidationError(f"Invalid tools/call response for '{name}': content must be a list")

        if handler is not None:
            for event in response.get("progress") or []:
                if isinstance(event, dict):
                    await call_maybe_async(handler, float(event.get("progress", 0.0)),
                                           event.get("total"), event.get("message"))
        await self._dispatch_embedded(response.get("notifications"))

        structured = response.get("structuredContent")
        data = None
        if structured is not None:
            data = schema_utils.decode_structured(structured, self._output_schemas.get(name))

        result = CallToolResult(
            content=parse_content(response["content"]),
            structured_content=structured,
            is_error=bool(response.get("isError", False)),
            meta=response.get("_meta"),
            data=data,
        )
        if handler is not None:
            await call_maybe_async(handler, 1.0, 1.0, "request completed")
        return result

    async def call_tool(self,
                        name: str,
                        arguments: Optional[Dict[str, Any]] = None,
                        meta: Optional[Dict[str, Any]] = None,
                        timeout: Optional[float] = None,
                        progress_handler: Optional[ProgressHandler] = None,
                        raise_on_error: bool = True) -> CallToolResult:
        """
        Call a tool.

        Raises:
            Error: If the tool reports ``isError`` and ``raise_on_error`` is set
        """
        result = await self.call_tool_mcp(name, arguments, CallToolOptions(
            meta=meta, timeout=timeout, progress_handler=progress_handler,
        ))
        if result.is_error and raise_on_error:
            raise Error(result.text or f"Tool '{name}' failed")
        return result

    # Resources

    async def list_resources_mcp(self) -> ListResourcesResult:
        return parse_result(ListResourcesResult, await self._request("resources/list"), "resources/list")

    async def list_resources(self) -> List[ResourceInfo]:
        return (await self.list_resources_mcp()).resources

    async def list_resource_templates_mcp(self) -> ListResourceTemplatesResult:
        raw = await self._request("resources/templates/list")
        return parse_result(ListResourceTemplatesResult, raw, "resources/templates/list")

    async def list_resource_templates(self) -> List[ResourceTemplateInfo]:
        return (await self.list_resource_templates_mcp()).resource_templates

    async def read_resource_mcp(self, uri: str) -> ReadResourceResult:
        return parse_result(ReadResourceResult, await self._request("resources/read", {"uri": uri}),
                            "resources/read")

    async def read_resource(self, uri: str):
        return (await self.read_resource_mcp(uri)).contents

    # Prompts

    async def list_prompts_mcp(self) -> ListPromptsResult:
        return parse_result(ListPromptsResult, await self._request("prompts/list"), "prompts/list")

    async def list_prompts(self) -> List[PromptInfo]:
        return (await self.list_prompts_mcp()).prompts

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> GetPromptResult:
        raw = await self._request("prompts/get", {"name": name, "arguments": arguments or {}})
        return parse_result(GetPromptResult, raw, "prompts/get")

    # Completion

    async def complete(self,
                       ref: Dict[str, Any],
                       argument: Dict[str, Any],
                       context: Optional[Dict[str, Any]] = None) -> CompleteResult:
        params: Dict[str, Any] = {"ref": ref, "argument": argument}
        if context:
            params["context"] = {"arguments": context}
        return parse_result(CompleteResult, await self._request("completion/complete", params),
                            "completion/complete")

    # Client-to-server notifications

    async def cancel(self, request_id: Union[str, int], reason: Optional[str] = None) -> None:
        """Ask the server to stop working on ``request_id``. Does not wait for anything."""
        params: Dict[str, Any] = {"requestId": request_id}
        if reason:
            params["reason"] = reason
        await self._notify("notifications/cancelled", params)

    async def progress(self, token: Union[str, int], value: float,
                       total: Optional[float] = None, message: Optional[str] = None) -> None:
        params: Dict[str, Any] = {"progressToken": token, "progress": value}
        if total is not None:
            params["total"] = total
        if message:
            params["message"] = message
        await self._notify("notifications/progress", params)

    async def send_roots_list_changed(self) -> None:
        roots = self.roots_callback() if self.roots_callback is not None else []
        await self._notify("notifications/roots/list_changed", {"roots": roots})

    async def poll_notifications(self) -> int:
        """
        Fetch queued server messages from a ``notifications/poll`` route and
        dispatch them. Returns how many were handled.
        """
        reply = await self._request("notifications/poll")
        notifications = reply.get("notifications") or []
        await self._dispatch_embedded(notifications)
        return len(notifications)

    def __repr__(self) -> str:
        return f"Client(transport={self.transport!r})"
