"""
Route dispatcher.
This module provides the Server class: a route table plus ordered before and
after hooks run around every handler.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from forge_mcp.core.components import Icon
from forge_mcp.core.utils import call_maybe_async
from forge_mcp.error_handling.exceptions import NotFoundError

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
Handler = Callable[[Payload], Union[Any, Awaitable[Any]]]
BeforeHook = Callable[[str, Payload], Union[Optional[Any], Awaitable[Optional[Any]]]]
AfterHook = Callable[[str, Payload, Any], Union[None, Awaitable[None]]]


class Server:
    """
    Dispatches named routes.

    ``handle(route, payload)`` runs the before hooks in registration order;
    the first one returning anything other than None short-circuits and that
    value is the response (no handler, no after hooks). Otherwise the route's
    handler runs and every after hook gets a chance to mutate its response
    in place, again in registration order.
    """

    def __init__(self,
                 name: str = "forge-mcp",
                 version: str = "0.1.0",
                 website_url: Optional[str] = None,
                 icons: Optional[List[Icon]] = None,
                 instructions: Optional[str] = None,
                 strict_input_validation: bool = False):
        self.name = name
        self.version = version
        self.website_url = website_url
        self.icons = icons
        self.instructions = instructions
        self.strict_input_validation = strict_input_validation
        self._routes: Dict[str, Handler] = {}
        self._before: List[BeforeHook] = []
        self._after: List[AfterHook] = []

    def route(self, name: str, handler: Optional[Handler] = None):
        """Register ``handler`` for ``name``; usable as a decorator when handler is omitted."""
        if handler is None:
            def decorator(fn: Handler) -> Handler:
                self._routes[name] = fn
                return fn
            return decorator
        self._routes[name] = handler
        return handler

    def add_before(self, hook: BeforeHook) -> None:
        self._before.append(hook)

    def add_after(self, hook: AfterHook) -> None:
        self._after.append(hook)

    def has_route(self, name: str) -> bool:
        return name in self._routes

    @property
    def routes(self) -> List[str]:
        return list(self._routes)

    async def handle(self, name: str, payload: Optional[Payload] = None) -> Any:
        """
        Run the hook pipeline and handler for ``name``.

        Raises:
            NotFoundError: If no hook short-circuits and the route is unknown
        """
        payload = payload if payload is not None else {}

        for hook in self._before:
            short_circuit = await call_maybe_async(hook, name, payload)
            if short_circuit is not None:
                logger.debug(f"Route {name} short-circuited by {getattr(hook, '__qualname__', hook)!r}")
                return short_circuit

        handler = self._routes.get(name)
        if handler is None:
            raise NotFoundError(f"route not found: {name}")

        response = await call_maybe_async(handler, payload)

        for hook in self._after:
            await call_maybe_async(hook, name, payload, response)

        return response

    def server_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {"name": self.name, "version": self.version}
        if self.website_url:
            info["websiteUrl"] = self.website_url
        if self.icons:
            info["icons"] = [icon.to_dict() for icon in self.icons]
        return info
