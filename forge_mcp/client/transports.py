"""
Client transports.
This module provides the channels a Client sends requests through. Every
transport exposes ``async request(route, payload)`` returning the reply
object; failures of the channel itself surface as TransportError, error
replies from the peer as ClientError.
"""

import asyncio
import itertools
import json
import logging
from typing import IO, Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import websockets
from websockets.exceptions import WebSocketException

from forge_mcp.client.sse import SSEParser
from forge_mcp.core.utils import call_maybe_async
from forge_mcp.error_handling.exceptions import ClientError, TransportError

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[str, Dict[str, Any]], Any]

DEFAULT_TIMEOUT = 30.0
MAX_CAPTURED_STDERR = 64 * 1024


class Transport:
    """Base class for client transports."""

    def __init__(self):
        self._notification_handler: Optional[NotificationHandler] = None

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        """Register the callable that receives messages the peer sends mid-request."""
        self._notification_handler = handler

    @property
    def connected(self) -> bool:
        return True

    async def request(self, route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def notify(self, route: str, payload: Dict[str, Any]) -> None:
        """Send a message that expects no reply."""
        await self.request(route, payload)

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class LoopbackTransport(Transport):
    """
    In-process transport that calls a dispatcher directly.

    Accepts a Server or anything carrying one as ``.server`` (an MCPApp).
    Exceptions raised by the dispatcher propagate unchanged.
    """

    def __init__(self, server):
        super().__init__()
        self.server = getattr(server, "server", server)
        self._closed = False

    @property
    def connected(self) -> bool:
        return not self._closed

    async def request(self, route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._closed:
            raise TransportError("Loopback transport is closed")
        result = await self.server.handle(route, payload or {})
        return result if result is not None else {}

    async def notify(self, route: str, payload: Dict[str, Any]) -> None:
        if not self.server.has_route(route):
            logger.debug(f"No route for notification {route}, dropped")
            return
        await self.request(route, payload)

    async def close(self) -> None:
        self._closed = True


def _error_from_body(body: Any) -> Optional[ClientError]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        return ClientError(error.get("code", -32603), error.get("message", "Unknown error"), error.get("data"))
    return None


class HttpTransport(Transport):
    """
    Plain HTTP transport: ``POST <base_url>/<route>`` with the payload as body.

    Manages an `httpx.AsyncClient`, created on first use.
    """

    def __init__(self, base_url: str, headers: Optional[Dict[str, str]] = None,
                 timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        if not base_url.startswith(("http://", "https://")):
            base_url = f"http://{base_url}"
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers, timeout=self.timeout)
            logger.debug(f"httpx.AsyncClient initialized for {self.base_url}")
        return self._client

    def _url(self, route: str) -> str:
        return f"{self.base_url}/{route.lstrip('/')}"

    async def request(self, route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._url(route)
        try:
            response = await self._get_client().post(url, json=payload or {})
            response.raise_for_status()
            body = response.json() if response.content else {}
        except httpx.TimeoutException as e:
            logger.error(f"HTTP Timeout Error: {str(e)}")
            raise TransportError(f"HTTP request to {url} timed out after {self.timeout} seconds", original_exception=e)
        except httpx.ConnectError as e:
            logger.error(f"HTTP Connection Error: {str(e)}")
            raise TransportError(f"HTTP Connection Error: Unable to connect to {url}", original_exception=e)
        except httpx.HTTPStatusError as e:
            error = _error_from_body(_safe_json(e.response))
            if error is not None:
                raise error
            logger.error(f"HTTP Status Error: {str(e)}")
            raise TransportError(f"HTTP error: {e.response.status_code}", original_exception=e)
        except httpx.RequestError as e:
            logger.error(f"HTTP Request Error: {str(e)}")
            raise TransportError(f"HTTP request failed: {e}", original_exception=e)
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON in response from {url}", original_exception=e)

        if not isinstance(body, dict):
            raise TransportError(f"Expected a JSON object from {url}")
        return body

    async def request_stream(self, route: str, payload: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        POST to ``route`` and yield the events of the Server-Sent Events reply.

        Raises:
            TransportError: On connection failures or an error status
        """
        url = self._url(route)
        parser = SSEParser()
        try:
            async with self._get_client().stream("POST", url, json=payload or {},
                                                 headers={"Accept": "text/event-stream"}) as response:
                if response.status_code >= 400:
                    raise TransportError(f"HTTP stream error: {response.status_code}")
                async for chunk in response.aiter_text():
                    for event in parser.feed(chunk):
                        yield event
        except httpx.HTTPError as e:
            logger.error(f"HTTP stream error on {url}: {e}")
            raise TransportError(f"HTTP stream request failed: {e}", original_exception=e)
        for event in parser.flush():
            yield event

    @property
    def connected(self) -> bool:
        return self._client is None or not self._client.is_closed

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return None


class JsonRpcStreamTransport(Transport):
    """
    Shared JSON-RPC exchange for message-oriented channels.

    Requests are serialized; while waiting for a reply, messages the peer
    initiates are passed to the notification handler and, when they carry
    an id, answered with the handler's return value.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def _send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _receive(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def _ensure_open(self) -> None:
        pass

    def _describe_failure(self, reason: str) -> str:
        return reason

    async def notify(self, route: str, payload: Dict[str, Any]) -> None:
        await self._ensure_open()
        await self._send({"jsonrpc": "2.0", "method": route, "params": payload or {}})

    async def request(self, route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            await self._ensure_open()
            request_id = next(self._ids)
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": route, "params": payload or {}})
            while True:
                try:
                    message = await asyncio.wait_for(self._receive(), timeout=self.timeout)
                except asyncio.TimeoutError as e:
                    raise TransportError(self._describe_failure(
                        f"Timed out waiting for response to '{route}'"), original_exception=e)
                if "method" in message:
                    await self._dispatch_incoming(message)
                    continue
                if message.get("id") != request_id:
                    logger.debug(f"Skipping reply for unknown id {message.get('id')!r}")
                    continue
                error = _error_from_body(message)
                if error is not None:
                    raise error
                result = message.get("result")
                if result is None:
                    return {}
                return result if isinstance(result, dict) else {"result": result}

    async def _dispatch_incoming(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}
        reply: Any = None
        error: Optional[Dict[str, Any]] = None
        if self._notification_handler is None:
            logger.debug(f"No handler for incoming {method}")
            if "id" in message:
                error = {"code": -32601, "message": f"Method '{method}' not found"}
        else:
            try:
                reply = await call_maybe_async(self._notification_handler, method, params)
            except Exception as e:
                logger.error(f"Handler for incoming {method} failed: {e}", exc_info=True)
                error = {"code": -32603, "message": str(e)}

        if "id" not in message:
            return
        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
        if error is not None:
            response["error"] = error
        else:
            response["result"] = reply if reply is not None else {}
        await self._send(response)


class WebSocketTransport(JsonRpcStreamTransport):
    """JSON-RPC over WebSocket text frames."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(timeout=timeout)
        self.url = url
        self.websocket = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None

    async def _ensure_open(self) -> None:
        if self.websocket is not None:
            return
        try:
            self.websocket = await websockets.connect(self.url)
        except (WebSocketException, OSError) as e:
            logger.error(f"WebSocket connection to {self.url} failed: {e}")
            raise TransportError(f"WebSocket connection to {self.url} failed: {e}", original_exception=e)
        logger.info(f"Connected to {self.url}")

    async def _send(self, message: Dict[str, Any]) -> None:
        try:
            await self.websocket.send(json.dumps(message))
        except WebSocketException as e:
            self.websocket = None
            raise TransportError(f"WebSocket send failed: {e}", original_exception=e)

    async def _receive(self) -> Dict[str, Any]:
        while True:
            try:
                frame = await self.websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                self.websocket = None
                raise TransportError(f"WebSocket connection closed: {e}", original_exception=e)
            try:
                message = json.loads(frame)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON frame from {self.url}")
                continue
            if isinstance(message, dict):
                return message

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None


class StdioTransport(JsonRpcStreamTransport):
    """
    Line-delimited JSON-RPC with a subprocess.

    The child's stderr is copied to ``log_file`` (appended) or ``log_stream``
    when one is given; otherwise it is captured and appended to the message
    of any TransportError raised while talking to the process. With
    ``keep_alive=False`` a fresh process is spawned for every request.
    """

    def __init__(self,
                 command: str,
                 args: Optional[List[str]] = None,
                 log_file: Optional[str] = None,
                 log_stream: Optional[IO[str]] = None,
                 keep_alive: bool = True,
                 env: Optional[Dict[str, str]] = None,
                 cwd: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        super().__init__(timeout=timeout)
        self.command = command
        self.args = list(args or [])
        self.log_file = log_file
        self.log_stream = log_stream
        self.keep_alive = keep_alive
        self.env = env
        self.cwd = cwd
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_sink: Optional[IO[str]] = None
        self._captured: List[str] = []

    @property
    def connected(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def captured_stderr(self) -> str:
        return "".join(self._captured)

    async def _ensure_open(self) -> None:
        if self.connected:
            return
        if self.process is not None:
            await self.close()
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.command, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except OSError as e:
            raise TransportError(f"StdioTransport: spawn failed: {e}", original_exception=e)
        logger.info(f"Started {self.command} (pid {self.process.pid})")

        if self.log_file:
            self._stderr_sink = open(self.log_file, "a")
        else:
            self._stderr_sink = self.log_stream
        self._captured = []
        self._stderr_task = asyncio.create_task(self._pump_stderr(self.process))

    async def _pump_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            if self._stderr_sink is not None:
                self._stderr_sink.write(text)
                self._stderr_sink.flush()
            elif sum(len(c) for c in self._captured) < MAX_CAPTURED_STDERR:
                self._captured.append(text)

    def _describe_failure(self, reason: str) -> str:
        stderr = self.captured_stderr.strip()
        return f"{reason}; stderr: {stderr}" if stderr else reason

    async def _send(self, message: Dict[str, Any]) -> None:
        try:
            self.process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(self._describe_failure(f"StdioTransport: failed to write: {e}"),
                                 original_exception=e)

    async def _receive(self) -> Dict[str, Any]:
        while True:
            line = await self.process.stdout.readline()
            if not line:
                code = await self.process.wait()
                if self._stderr_task is not None:
                    # let the pump drain what the process wrote before exiting
                    await asyncio.wait([self._stderr_task], timeout=1.0)
                raise TransportError(self._describe_failure(
                    f"StdioTransport process exited with code: {code}"))
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON output line: {text[:200]}")
                continue
            if isinstance(message, dict):
                return message

    async def request(self, route: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await super().request(route, payload)
        finally:
            if not self.keep_alive:
                await self.close()

    async def close(self) -> None:
        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None
        if self.log_file and self._stderr_sink is not None:
            self._stderr_sink.close()
        self._stderr_sink = None

