"""
MCP server runtime.
This module provides the stdio and streamable-HTTP transports, YAML
configuration loading and the command line entry point.
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp.web as web
import yaml
from aiohttp_sse import sse_response
from cachetools import TTLCache

from forge_mcp.core.app import MCPApp
from forge_mcp.core.logging_config import setup_logging, setup_logging_from_config
from forge_mcp.core.middleware import (
    ConcurrencyLimitMiddleware,
    LoggingMiddleware,
    RateLimitMiddleware,
    ResponseLimitingMiddleware,
)
from forge_mcp.core.protocol_handler import MCPHandler, jsonrpc_error
from forge_mcp.core.session import ServerSession
from forge_mcp.error_handling.exceptions import ConfigurationError, Error, NotFoundError
from forge_mcp.providers.local_provider import DuplicateBehavior

logger = logging.getLogger(__name__)

CONNECTION_TYPES = ("stdio", "streamable_http")

DEFAULT_CONFIG: Dict[str, Any] = {
    "name": "forge-mcp",
    "version": "0.1.0",
    "connection_type": "stdio",
    "log_level": "INFO",
    "dereference_schemas": True,
    "strict_input_validation": False,
    "duplicate_behavior": "warn",
    "http": {"host": "0.0.0.0", "port": 8080},
}


class StdioProtocol:
    """Line-delimited JSON-RPC over stdin/stdout. Logs never go to stdout."""

    def __init__(self, app: MCPApp, session_id: str = "stdio"):
        self.app = app
        self.session = ServerSession(session_id, send=self._write)
        self.handler = MCPHandler(app, self.session)
        self.running = False
        self._tasks = set()

    async def _write(self, message: Dict[str, Any]) -> None:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()

    async def _process(self, line: str) -> None:
        try:
            response = await self.handler.handle_raw(line)
        except Exception as e:
            logger.error(f"Error processing request: {e}", exc_info=True)
            response = jsonrpc_error(None, -32603, str(e))
        if response is not None:
            await self._write(response)

    async def run(self):
        """Read requests until EOF or ``stop()``."""
        self.running = True
        loop = asyncio.get_running_loop()
        logger.info("stdio transport started")
        while self.running:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                logger.info("Received EOF, shutting down")
                break
            line = line.strip()
            if not line:
                continue
            # each message runs in its own task so sampling replies can arrive mid-call
            task = asyncio.create_task(self._process(line))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.running = False
        self.session.close()

    def stop(self):
        """Stop the protocol."""
        self.running = False


@dataclass
class HttpSession:
    handler: MCPHandler
    queue: asyncio.Queue

    def close(self) -> None:
        if self.handler.session is not None:
            self.handler.session.close()


class SessionCache(TTLCache):
    """TTLCache of HTTP sessions that closes each session as it leaves the cache."""

    def expire(self, time=None):
        expired = super().expire(time)
        for session_id, session in expired:
            logger.info(f"HTTP session {session_id} expired")
            session.close()
        return expired

    def popitem(self):
        session_id, session = super().popitem()
        logger.info(f"HTTP session {session_id} evicted")
        session.close()
        return session_id, session


class StreamableHTTPProtocol:
    """
    HTTP transport on aiohttp.

    ``POST /mcp`` carries JSON-RPC, ``DELETE /mcp`` ends a session, ``GET /sse``
    streams server-initiated messages for a session and ``POST /<route>``
    calls a dispatcher route directly with the body as payload.

    Sessions live in a ``SessionCache`` bounded by ``http.max_sessions``; a
    session unused for ``http.session_ttl`` seconds is dropped.
    """

    SESSION_HEADER = "Mcp-Session-Id"

    def __init__(self, app: MCPApp, config: Dict[str, Any]):
        self.mcp_app = app
        self.config = config
        self.running = False
        http_config = config.get("http", {})
        self.heartbeat_interval = http_config.get("heartbeat_interval", 30)
        self._sessions = SessionCache(maxsize=http_config.get("max_sessions", 1000),
                                      ttl=http_config.get("session_ttl", 3600))

        @web.middleware
        async def cors_middleware(request, handler):
            if request.method == "OPTIONS":
                response = web.Response()
            else:
                response = await handler(request)
            response.headers['Access-Control-Allow-Origin'] = '*'
            response.headers['Access-Control-Allow-Methods'] = 'GET, POST, DELETE, OPTIONS'
            response.headers['Access-Control-Allow-Headers'] = f'Content-Type, {self.SESSION_HEADER}'
            response.headers['Access-Control-Expose-Headers'] = self.SESSION_HEADER
            return response

        self.web_app = web.Application(middlewares=[cors_middleware])
        self.web_app.router.add_post('/mcp', self._handle_mcp)
        self.web_app.router.add_delete('/mcp', self._handle_delete)
        self.web_app.router.add_get('/sse', self._handle_sse)
        self.web_app.router.add_post('/{route:.+}', self._handle_route)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def _session_for(self, session_id: str) -> HttpSession:
        session = self._sessions.get(session_id)
        if session is None:
            queue: asyncio.Queue = asyncio.Queue()
            handler = MCPHandler(self.mcp_app, ServerSession(session_id, send=queue.put))
            session = HttpSession(handler, queue)
            logger.info(f"New HTTP session {session_id}")
        # re-inserting restarts the session's time to live
        self._sessions[session_id] = session
        return session

    async def _handle_mcp(self, request: web.Request) -> web.Response:
        session_id = request.headers.get(self.SESSION_HEADER) or str(uuid.uuid4())
        handler = self._session_for(session_id).handler
        headers = {self.SESSION_HEADER: session_id}

        try:
            data = json.loads(await request.text())
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in request: {e}")
            return web.json_response(jsonrpc_error(None, -32700, "Parse error: Invalid JSON"),
                                     status=400, headers=headers)

        if isinstance(data, list):
            responses = [r for r in [await handler.handle_message(m) for m in data if isinstance(m, dict)]
                         if r is not None]
            if not responses:
                return web.Response(status=202, headers=headers)
            return web.json_response(responses, headers=headers)

        if not isinstance(data, dict):
            return web.json_response(jsonrpc_error(None, -32600, "Invalid JSON-RPC request"),
                                     status=400, headers=headers)

        response = await handler.handle_message(data)
        if response is None:
            return web.Response(status=202, headers=headers)
        return web.json_response(response, headers=headers)

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        session_id = request.query.get("session_id") or request.headers.get(self.SESSION_HEADER) or str(uuid.uuid4())
        queue = self._session_for(session_id).queue

        async with sse_response(request) as response:
            await response.send(json.dumps({"session_id": session_id}), event="endpoint")
            while self.running and response.is_connected():
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    if self._sessions.get(session_id) is None:
                        break
                    self._session_for(session_id)
                    await response.send("{}", event="heartbeat")
                    continue
                await response.send(json.dumps(message))
        logger.info(f"SSE stream closed for session {session_id}")
        return response

    async def _handle_delete(self, request: web.Request) -> web.Response:
        session_id = request.headers.get(self.SESSION_HEADER)
        session = self._sessions.pop(session_id, None) if session_id else None
        if session is None:
            return web.json_response(jsonrpc_error(None, -32600, "Unknown session"), status=404)
        session.close()
        logger.info(f"HTTP session {session_id} closed by client")
        return web.Response(status=204)

    async def _handle_route(self, request: web.Request) -> web.Response:
        route = request.match_info["route"]
        try:
            body = await request.text()
            payload = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            return web.json_response({"error": {"code": -32700, "message": f"Parse error: {e}"}}, status=400)

        try:
            result = await self.mcp_app.server.handle(route, payload)
        except NotFoundError as e:
            return web.json_response({"error": e.to_jsonrpc_error()}, status=404)
        except Error as e:
            return web.json_response({"error": e.to_jsonrpc_error()}, status=400)
        except Exception as e:
            logger.error(f"Error handling route {route}: {e}", exc_info=True)
            return web.json_response({"error": {"code": -32603, "message": str(e)}}, status=500)
        return web.json_response(result if result is not None else {})

    async def start(self):
        self.running = True
        self.runner = web.AppRunner(self.web_app)
        await self.runner.setup()
        host = self.config.get('http', {}).get('host', '0.0.0.0')
        port = self.config.get('http', {}).get('port', 8080)
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()
        logger.info(f"HTTP server started on {host}:{port}")

    async def run(self):
        """Run the protocol until ``stop()``."""
        await self.start()
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.cleanup()

    async def cleanup(self):
        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

    def stop(self):
        """Stop the protocol."""
        self.running = False


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load a YAML configuration file merged over the defaults.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    try:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {config_path}", original_exception=e)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", original_exception=e)
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration in {config_path} must be a mapping")

    config = dict(DEFAULT_CONFIG)
    config.update(loaded)
    config["http"] = {**DEFAULT_CONFIG["http"], **(loaded.get("http") or {})}
    validate_config(config)
    return config


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}", original_exception=e)
    if number <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return number


def validate_config(config: Dict[str, Any]) -> None:
    if config.get("connection_type") not in CONNECTION_TYPES:
        raise ConfigurationError(
            f"Invalid connection_type: {config.get('connection_type')!r} (expected one of {', '.join(CONNECTION_TYPES)})"
        )
    try:
        DuplicateBehavior(config.get("duplicate_behavior", "warn"))
    except ValueError as e:
        raise ConfigurationError(f"Invalid duplicate_behavior: {config.get('duplicate_behavior')!r}",
                                 original_exception=e)
    rate_limit = config.get("rate_limit")
    if rate_limit is not None:
        if not isinstance(rate_limit, dict):
            raise ConfigurationError("rate_limit must be a mapping")
        _positive_int(rate_limit.get("max_requests"), "rate_limit.max_requests")
    if config.get("concurrency_limit") is not None:
        _positive_int(config["concurrency_limit"], "concurrency_limit")
    response_limit = config.get("response_limit")
    if response_limit is not None:
        if not isinstance(response_limit, dict):
            raise ConfigurationError("response_limit must be a mapping")
        _positive_int(response_limit.get("max_size"), "response_limit.max_size")
    http = config.get("http") or {}
    for key in ("max_sessions", "session_ttl"):
        if http.get(key) is not None:
            _positive_int(http[key], f"http.{key}")


def build_app_from_config(config: Dict[str, Any], app: Optional[MCPApp] = None) -> MCPApp:
    """Create (or configure) an MCPApp and install the middleware the config asks for."""
    if app is None:
        app = MCPApp(
            name=config.get("name", DEFAULT_CONFIG["name"]),
            version=str(config.get("version", DEFAULT_CONFIG["version"])),
            instructions=config.get("instructions"),
            website_url=config.get("website_url"),
            on_duplicate=config.get("duplicate_behavior", "warn"),
            dereference_schemas=config.get("dereference_schemas", True),
            strict_input_validation=config.get("strict_input_validation", False),
        )
    if "mask_error_details" in config:
        app.sampling_options.mask_error_details = bool(config["mask_error_details"])

    if config.get("log_requests"):
        LoggingMiddleware().install(app.server)
    rate_limit = config.get("rate_limit")
    if rate_limit:
        RateLimitMiddleware(
            max_requests=int(rate_limit["max_requests"]),
            window_seconds=float(rate_limit.get("window_seconds", 60)),
        ).install(app.server)
    if config.get("concurrency_limit"):
        ConcurrencyLimitMiddleware(int(config["concurrency_limit"])).install(app.server)
    response_limit = config.get("response_limit")
    if response_limit:
        ResponseLimitingMiddleware(
            max_size=int(response_limit["max_size"]),
            tool_filter=response_limit.get("tools"),
        ).install(app.server)
    return app


def create_protocol(app: MCPApp, config: Dict[str, Any]):
    if config.get("connection_type") == "streamable_http":
        return StreamableHTTPProtocol(app, config)
    return StdioProtocol(app)


async def main(config_path: str = "config.yaml", app: Optional[MCPApp] = None):
    """Main entry point for the server."""
    config = load_config(config_path)

    protocol_name = config.get("connection_type", "stdio")
    if "logging" in config:
        setup_logging_from_config(config["logging"])
    else:
        setup_logging(config.get("log_level", "INFO"), protocol=protocol_name)
    logger.info(f"Configuration loaded from {config_path}")

    app = build_app_from_config(config, app)
    protocol = create_protocol(app, config)
    logger.info(f"Starting {app.name} {app.version} over {protocol_name}")
    try:
        await protocol.run()
    finally:
        protocol.stop()


def main_cli():
    """Command line entry point."""
    parser = argparse.ArgumentParser(description='forge-mcp server')
    parser.add_argument('--config', default='config.yaml',
                        help='Path to configuration file')
    args = parser.parse_args()

    try:
        asyncio.run(main(args.config))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main_cli()
