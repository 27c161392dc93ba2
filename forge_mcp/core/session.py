"""
Server-side session.
This module provides ServerSession, which tracks what a connected client
advertised and correlates server-initiated requests (sampling, elicitation,
roots) with the client's replies.
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from forge_mcp.error_handling.exceptions import ClientError, RequestTimeoutError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

SendCallback = Callable[[Dict[str, Any]], Awaitable[None]]


class ServerSession:
    """One client connection as seen from the server."""

    def __init__(self, session_id: str, send: Optional[SendCallback] = None):
        self.session_id = session_id
        self._send = send
        self._capabilities: Dict[str, Any] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._counter = itertools.count(1)

    @property
    def capabilities(self) -> Dict[str, Any]:
        return dict(self._capabilities)

    def set_capabilities(self, capabilities: Optional[Dict[str, Any]]) -> None:
        self._capabilities = dict(capabilities or {})
        logger.debug(f"Session {self.session_id} capabilities: {sorted(self._capabilities)}")

    def set_send(self, send: SendCallback) -> None:
        self._send = send

    @property
    def supports_sampling(self) -> bool:
        return isinstance(self._capabilities.get("sampling"), dict)

    @property
    def supports_sampling_tools(self) -> bool:
        sampling = self._capabilities.get("sampling")
        return isinstance(sampling, dict) and isinstance(sampling.get("tools"), dict)

    @property
    def supports_elicitation(self) -> bool:
        return isinstance(self._capabilities.get("elicitation"), dict)

    @property
    def supports_roots(self) -> bool:
        return isinstance(self._capabilities.get("roots"), dict)

    @staticmethod
    def is_response(message: Dict[str, Any]) -> bool:
        return "id" in message and "method" not in message

    async def send_request(self, method: str, params: Optional[Dict[str, Any]] = None,
                           timeout: float = DEFAULT_TIMEOUT) -> Any:
        """
        Send a request to the client and wait for its reply.

        Raises:
            RequestTimeoutError: If no reply arrives within ``timeout`` seconds
            ClientError: If the client answers with an error
        """
        if self._send is None:
            raise TransportError(f"Session {self.session_id} has no channel to the client")

        request_id = f"srv_{next(self._counter)}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params or {},
            })
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"Request '{method}' timed out after {timeout:g}s", original_exception=e
            )
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if self._send is None:
            logger.debug(f"Dropping notification {method}: session {self.session_id} has no channel")
            return
        await self._send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    def handle_response(self, message: Dict[str, Any]) -> bool:
        """Resolve the pending request ``message`` answers. Returns False if none matches."""
        if "id" not in message or message["id"] is None:
            return False
        future = self._pending.get(str(message["id"]))
        if future is None or future.done():
            return False

        error = message.get("error")
        if error is not None:
            error = error if isinstance(error, dict) else {"message": str(error)}
            future.set_exception(ClientError(
                error.get("code", -1),
                error.get("message", "Unknown error"),
                error.get("data"),
            ))
        else:
            future.set_result(message.get("result"))
        return True

    def close(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

    def __repr__(self) -> str:
        return f"ServerSession(session_id={self.session_id!r})"
