"""
Reusable dispatcher hooks.
This module provides middleware objects whose hooks close over shared state
(log sinks, rate counters) that outlives any single request. Each exposes
``install(server)`` to register its hooks on a Server.
"""

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Union

from forge_mcp.core.utils import call_maybe_async

logger = logging.getLogger(__name__)


@dataclass
class RequestLogEntry:
    timestamp: datetime
    route: str
    payload_size: int
    success: bool = True
    error_message: str = ""
    duration: Optional[float] = None
    phase: str = "request"


class LoggingMiddleware:
    """Records one entry when a route starts and one when it completes."""

    def __init__(self, callback: Optional[Callable[[RequestLogEntry], None]] = None,
                 log_level: int = logging.INFO):
        self.callback = callback
        self.log_level = log_level
        self._started: Dict[str, deque] = {}

    def _emit(self, entry: RequestLogEntry) -> None:
        if self.callback is not None:
            self.callback(entry)
            return
        if entry.phase == "request":
            logger.log(self.log_level, f"-> {entry.route} ({entry.payload_size} bytes)")
        elif entry.success:
            logger.log(self.log_level, f"<- {entry.route} ok in {entry.duration or 0:.3f}s")
        else:
            logger.log(self.log_level, f"<- {entry.route} failed in {entry.duration or 0:.3f}s: {entry.error_message}")

    def before(self, route: str, payload: Dict[str, Any]) -> None:
        size = len(json.dumps(payload, default=str))
        self._started.setdefault(route, deque()).append((time.monotonic(), size))
        self._emit(RequestLogEntry(timestamp=datetime.now(), route=route, payload_size=size))
        return None

    def after(self, route: str, payload: Dict[str, Any], response: Any) -> None:
        pending = self._started.get(route)
        started, size = pending.popleft() if pending else (time.monotonic(), 0)
        if pending is not None and not pending:
            del self._started[route]
        error = response.get("error") if isinstance(response, dict) else None
        self._emit(RequestLogEntry(
            timestamp=datetime.now(),
            route=route,
            payload_size=size,
            success=error is None,
            error_message=json.dumps(error, default=str) if error is not None else "",
            duration=time.monotonic() - started,
            phase="response",
        ))

    def install(self, server) -> None:
        server.add_before(self.before)
        server.add_after(self.after)


class RateLimitMiddleware:
    """
    Sliding-window rate limit per route.

    Over the limit, the before hook short-circuits with an ``error`` object
    instead of running the handler.
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._request_times: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def _cleanup_old_requests(self, route: str) -> None:
        cutoff = time.monotonic() - self.window_seconds
        times = self._request_times[route]
        while times and times[0] < cutoff:
            times.popleft()

    async def before(self, route: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            times = self._request_times.setdefault(route, deque())
            self._cleanup_old_requests(route)

            if len(times) >= self.max_requests:
                logger.warning(f"Rate limit exceeded for route: {route}")
                return {
                    "error": {
                        "code": -32000,
                        "message": f"Rate limit exceeded for route: {route}",
                        "data": {
                            "route": route,
                            "limit": self.max_requests,
                            "window_seconds": int(self.window_seconds),
                            "current_count": len(times),
                        },
                    }
                }

            times.append(time.monotonic())
            return None

    async def get_request_count(self, route: str) -> int:
        async with self._lock:
            if route not in self._request_times:
                return 0
            self._cleanup_old_requests(route)
            return len(self._request_times[route])

    async def reset(self, route: Optional[str] = None) -> None:
        async with self._lock:
            if route is None:
                self._request_times.clear()
            else:
                self._request_times.pop(route, None)

    def install(self, server) -> None:
        server.add_before(self.before)


class ConcurrencyLimitMiddleware:
    """
    Caps the number of in-flight requests.

    The counter is incremented first and rolled back when over the limit,
    so the cap is advisory: a burst of concurrent requests can briefly
    observe each other's increments. A handler that raises never reaches
    the after hook, so its slot is only returned through ``release()``.
    """

    def __init__(self, max_concurrent: int = 10):
        self.max_concurrent = max_concurrent
        self.current = 0

    def before(self, route: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        current = self.current
        self.current += 1
        if current >= self.max_concurrent:
            self.current -= 1
            return {
                "error": {
                    "code": -32000,
                    "message": "Concurrency limit exceeded",
                    "data": {"route": route, "limit": self.max_concurrent, "current": current},
                }
            }
        return None

    def after(self, route: str, payload: Dict[str, Any], response: Any) -> None:
        self.release()

    def release(self) -> None:
        if self.current > 0:
            self.current -= 1

    def install(self, server) -> None:
        server.add_before(self.before)
        server.add_after(self.after)


class ResponseLimitingMiddleware:
    """Truncates oversized text output of ``tools/call``."""

    def __init__(self, max_size: int = 1_000_000,
                 truncation_suffix: str = "... [truncated]",
                 tool_filter: Optional[Iterable[str]] = None):
        self.max_size = max_size
        self.truncation_suffix = truncation_suffix
        self.tool_filter = set(tool_filter or [])

    def after(self, route: str, payload: Dict[str, Any], response: Any) -> None:
        if route != "tools/call" or not isinstance(response, dict):
            return
        if self.tool_filter and payload.get("name") not in self.tool_filter:
            return

        # route handlers return the bare result, but tolerate an envelope too
        target = response
        if not isinstance(target.get("content"), list) and isinstance(target.get("result"), dict):
            target = target["result"]
        content = target.get("content")
        if not isinstance(content, list):
            return

        combined = "".join(item.get("text", "") for item in content
                           if isinstance(item, dict) and item.get("type") == "text")
        if len(combined) <= self.max_size:
            return

        cut = self.max_size
        if cut > len(self.truncation_suffix):
            cut -= len(self.truncation_suffix)
        logger.info(f"Truncated tools/call output from {len(combined)} to {self.max_size} characters")
        target["content"] = [{"type": "text", "text": combined[:cut] + self.truncation_suffix}]

    def install(self, server) -> None:
        server.add_after(self.after)


ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class InjectedTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ToolInjectionMiddleware:
    """
    Adds tools that live outside any provider.

    The after hook appends them to ``tools/list``; the before hook answers
    ``tools/call`` for them so the regular handler never sees the call.
    """

    def __init__(self):
        self._tools: Dict[str, InjectedTool] = {}

    @property
    def tools(self) -> List[InjectedTool]:
        return list(self._tools.values())

    def add_tool(self, name: str, description: str, input_schema: Dict[str, Any],
                 handler: ToolHandler) -> None:
        self._tools[name] = InjectedTool(name, description, input_schema, handler)

    def add_prompt_tools(self, app) -> None:
        """Expose ``list_prompts`` / ``get_prompt`` of ``app`` as tools."""
        async def list_prompts(args: Dict[str, Any]) -> Dict[str, Any]:
            prompts = [{"name": p.name, "description": p.description,
                        "arguments": [a.to_dict() for a in p.arguments]}
                       for p in app.list_all_prompts()]
            return {"content": [{"type": "text", "text": json.dumps(prompts, indent=2)}]}

        async def get_prompt(args: Dict[str, Any]) -> Dict[str, Any]:
            result = await app.render_prompt(args["name"], args.get("arguments") or {})
            text = "\n\n".join(
                m.content if isinstance(m.content, str) else json.dumps(m.content)
                for m in result.messages
            )
            return {"content": [{"type": "text", "text": text}]}

        self.add_tool(
            "list_prompts", "List all available prompts from the server",
            {"type": "object", "properties": {}, "required": []}, list_prompts)
        self.add_tool(
            "get_prompt", "Get and render a specific prompt with arguments",
            {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "The name of the prompt to render"},
                    "arguments": {"type": "object", "description": "Arguments to pass to the prompt",
                                  "additionalProperties": True},
                },
                "required": ["name"],
            },
            get_prompt)

    def add_resource_tools(self, app) -> None:
        """Expose ``list_resources`` / ``read_resource`` of ``app`` as tools."""
        async def list_resources(args: Dict[str, Any]) -> Dict[str, Any]:
            resources = [{"uri": r.uri, "name": r.name, "mimeType": r.mime_type}
                         for r in app.list_all_resources()]
            return {"content": [{"type": "text", "text": json.dumps(resources, indent=2)}]}

        async def read_resource(args: Dict[str, Any]) -> Dict[str, Any]:
            content = await app.read_resource(args["uri"])
            data = content.to_dict()
            return {"content": [{"type": "text", "text": data.get("text", data.get("blob", ""))}]}

        self.add_tool(
            "list_resources", "List all available resources from the server",
            {"type": "object", "properties": {}, "required": []}, list_resources)
        self.add_tool(
            "read_resource", "Read the contents of a specific resource",
            {
                "type": "object",
                "properties": {"uri": {"type": "string", "description": "The URI of the resource to read"}},
                "required": ["uri"],
            },
            read_resource)

    def after(self, route: str, payload: Dict[str, Any], response: Any) -> None:
        if route != "tools/list" or not isinstance(response, dict):
            return
        if not isinstance(response.get("tools"), list):
            response["tools"] = []
        response["tools"].extend(tool.to_dict() for tool in self._tools.values())

    async def before(self, route: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if route != "tools/call":
            return None
        tool = self._tools.get(payload.get("name"))
        if tool is None:
            return None
        try:
            result = await call_maybe_async(tool.handler, payload.get("arguments") or {})
        except Exception as e:
            logger.error(f"Injected tool '{tool.name}' failed: {e}")
            return {
                "content": [{"type": "text", "text": f"Tool execution error: {e}"}],
                "isError": True,
            }
        if isinstance(result, dict) and "content" in result:
            return result
        text = result if isinstance(result, str) else json.dumps(result, default=str)
        return {"content": [{"type": "text", "text": text}]}

    def install(self, server) -> None:
        server.add_before(self.before)
        server.add_after(self.after)
