"""
Proxy application.
This module provides ProxyApp, an MCP server that forwards listings, tool
calls, resource reads and prompt requests to a backend MCP server through a
Client, while serving its own local components first.
"""

import logging
from typing import Any, Callable, Dict, List, Set

from pydantic import BaseModel

from forge_mcp.client.client import CallToolOptions, Client
from forge_mcp.client.transports import HttpTransport
from forge_mcp.core.app import MCPApp
from forge_mcp.error_handling.exceptions import (
    ClientError,
    Error,
    NotFoundError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Client]

_NOT_FOUND_BY_CODE = {
    -32602: NotFoundError,
    -32002: ResourceNotFoundError,
    -32001: PromptNotFoundError,
}


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)


def _backend_error(e: ClientError) -> Error:
    """Turn a backend not-found reply into the matching local error so its code survives."""
    not_found = _NOT_FOUND_BY_CODE.get(e.code)
    if not_found is None:
        return e
    return not_found(e.message, original_exception=e)


class ProxyApp(MCPApp):
    """
    An MCP server in front of a backend MCP server.

    ``client_factory`` returns a Client for the backend; a fresh one is
    built for every operation. Clients built from a ``transport_factory``
    own their transport and are closed after the operation.

    Local components (registered with the usual decorators, or mounted)
    take precedence over backend components with the same name or URI.
    When the backend cannot be reached, listings fall back to the local
    components only.
    """

    def __init__(self, client_factory: ClientFactory, name: str = "proxy", version: str = "1.0.0", **kwargs):
        super().__init__(name=name, version=version, **kwargs)
        self.client_factory = client_factory

    def get_client(self) -> Client:
        return self.client_factory()

    async def _with_client(self, operation: Callable[[Client], Any]) -> Any:
        client = self.client_factory()
        try:
            return await operation(client)
        except ClientError as e:
            mapped = _backend_error(e)
            if mapped is e:
                raise
            raise mapped from e
        finally:
            if client.transport_factory is not None:
                await client.close()

    async def _remote_listing(self, what: str, operation: Callable[[Client], Any]) -> List[BaseModel]:
        try:
            return await self._with_client(operation)
        except Error as e:
            logger.warning(f"Backend {what} unavailable, serving local components only: {e}")
            return []

    def capabilities(self) -> Dict[str, Any]:
        capabilities = super().capabilities()
        capabilities.setdefault("resources", {})
        capabilities.setdefault("prompts", {})
        return capabilities

    # Listings: local first, then backend entries not shadowed locally

    async def _handle_tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        tools = [self.tool_to_dict(tool) for tool in self.list_all_tools()]
        local: Set[str] = {tool["name"] for tool in tools}
        remote = await self._remote_listing("tools/list", lambda client: client.list_tools())
        tools.extend(_dump(tool) for tool in remote if tool.name not in local)
        return {"tools": tools}

    async def _handle_resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        resources = [self.resource_to_dict(r) for r in self.list_all_resources()]
        local = {r["uri"] for r in resources}
        remote = await self._remote_listing("resources/list", lambda client: client.list_resources())
        resources.extend(_dump(r) for r in remote if r.uri not in local)
        return {"resources": resources}

    async def _handle_templates_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        templates = [self.template_to_dict(t) for t in self.list_all_templates()]
        local = {t["uriTemplate"] for t in templates}
        remote = await self._remote_listing("resources/templates/list",
                                            lambda client: client.list_resource_templates())
        templates.extend(_dump(t) for t in remote if t.uri_template not in local)
        return {"resourceTemplates": templates}

    async def _handle_prompts_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        prompts = [self.prompt_to_dict(p) for p in self.list_all_prompts()]
        local = {p["name"] for p in prompts}
        remote = await self._remote_listing("prompts/list", lambda client: client.list_prompts())
        prompts.extend(_dump(p) for p in remote if p.name not in local)
        return {"prompts": prompts}

    # Routing: local when it exists, backend otherwise

    async def _handle_tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not name:
            raise ValidationError("Missing tool name")
        if self.provider.find_tool(name) is not None:
            return await super()._handle_tools_call(params)

        options = CallToolOptions(meta=params.get("_meta"))
        result = await self._with_client(
            lambda client: client.call_tool_mcp(name, params.get("arguments") or {}, options)
        )
        reply: Dict[str, Any] = {"content": [block.to_dict() for block in result.content]}
        if result.structured_content is not None:
            reply["structuredContent"] = result.structured_content
        if result.is_error:
            reply["isError"] = True
        if result.meta:
            reply["_meta"] = result.meta
        return reply

    async def _handle_resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        uri = params.get("uri")
        if not uri:
            raise ValidationError("Missing resource URI")
        local_uri = uri.rstrip("/")
        if (self.provider.find_resource(local_uri) is not None
                or self.provider.find_resource_template(local_uri) is not None):
            return await super()._handle_resources_read(params)

        result = await self._with_client(lambda client: client.read_resource_mcp(uri))
        return {"contents": [_dump(content) for content in result.contents]}

    async def _handle_prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not name:
            raise ValidationError("Missing prompt name")
        if self.provider.find_prompt(name) is not None:
            return await super()._handle_prompts_get(params)

        result = await self._with_client(lambda client: client.get_prompt(name, params.get("arguments") or {}))
        return _dump(result)

    def __repr__(self) -> str:
        return f"ProxyApp(name={self.name!r}, version={self.version!r})"


def create_proxy(target: Any, name: str = "proxy", version: str = "1.0.0", **kwargs) -> ProxyApp:
    """
    Build a ProxyApp for ``target``.

    ``target`` may be a Client (its ``new_()`` supplies per-operation
    clients), a URL (each operation gets its own HttpTransport) or an
    in-process MCPApp/Server.

    Raises:
        ValueError: If ``target`` is not a Client, a URL or an app
    """
    if isinstance(target, Client):
        factory: ClientFactory = target.new_
    elif isinstance(target, str):
        def factory() -> Client:
            return Client(transport_factory=lambda: HttpTransport(target))
    elif hasattr(target, "handle") or hasattr(target, "server"):
        def factory() -> Client:
            return Client(target)
    else:
        raise ValueError(f"Cannot proxy to {target!r}: expected a Client, a URL or an MCP app")
    logger.info(f"Proxy '{name}' created for {target!r}")
    return ProxyApp(factory, name=name, version=version, **kwargs)
