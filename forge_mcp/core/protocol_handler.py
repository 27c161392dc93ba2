"""
MCP Protocol Handler implementation.
This module provides the JSON-RPC 2.0 envelopes and MCPHandler, which turns
inbound messages into dispatcher calls on an MCPApp and maps failures onto
MCP error codes.
"""

import json
import logging
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from forge_mcp.core.session import ServerSession
from forge_mcp.error_handling.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 request model."""
    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None
    id: Optional[Union[str, int]] = None


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    """JSON-RPC 2.0 response model."""
    jsonrpc: Literal["2.0"] = "2.0"
    result: Optional[Any] = None
    error: Optional[JsonRpcError] = None
    id: Optional[Union[str, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            data["error"] = self.error.model_dump(exclude_none=True)
        else:
            data["result"] = self.result if self.result is not None else {}
        return data


def jsonrpc_result(request_id: Optional[Union[str, int]], result: Any) -> Dict[str, Any]:
    return JsonRpcResponse(id=request_id, result=result).to_dict()


def jsonrpc_error(request_id: Optional[Union[str, int]], code: int, message: str,
                  data: Optional[Any] = None) -> Dict[str, Any]:
    return JsonRpcResponse(id=request_id, error=JsonRpcError(code=code, message=message, data=data)).to_dict()


class MCPHandler:
    """
    Translates JSON-RPC messages for one connection.

    Requests go through ``app.server.handle`` so before/after hooks see
    every method family. Notifications get no response; replies to
    server-initiated requests are routed to the session.
    """

    def __init__(self, app, session: Optional[ServerSession] = None):
        self.app = app
        self.session = session

    def parse(self, data: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Decode one raw message.

        Raises:
            ValidationError: If the payload is not JSON or not an object
        """
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Parse error: {e}", original_exception=e)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON-RPC message: expected an object")
        return data

    async def handle_raw(self, data: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        try:
            message = self.parse(data)
        except ValidationError as e:
            return jsonrpc_error(None, PARSE_ERROR, e.message)
        return await self.handle_message(message)

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        request_id = message.get("id")

        if "method" not in message:
            if self.session is not None and self.session.handle_response(message):
                return None
            logger.warning(f"Unmatched response for id {request_id!r}")
            return None

        try:
            request = JsonRpcRequest(**message)
        except PydanticValidationError as e:
            return jsonrpc_error(request_id if isinstance(request_id, (str, int)) else None,
                                 INVALID_REQUEST, f"Invalid JSON-RPC request: {e.errors()[0]['msg']}")

        method = request.method
        params = request.params or {}

        if method.startswith("notifications/"):
            self._handle_notification(method, params)
            return None

        if method == "initialize" and self.session is not None:
            self.session.set_capabilities(params.get("capabilities") or {})

        if not self.app.server.has_route(method):
            return jsonrpc_error(request.id, METHOD_NOT_FOUND, f"Method '{method}' not found")

        try:
            result = await self.app.server.handle(method, params)
        except (NotFoundError, ValidationError) as e:
            logger.info(f"{method} rejected: {e.message}")
            return jsonrpc_error(request.id, e.code, e.message)
        except Exception as e:
            logger.error(f"Error handling {method}: {e}", exc_info=True)
            return jsonrpc_error(request.id, INTERNAL_ERROR, str(e))

        # short-circuiting hooks report failures as {"error": {...}}
        if isinstance(result, dict) and isinstance(result.get("error"), dict):
            error = result["error"]
            return jsonrpc_error(request.id, error.get("code", INTERNAL_ERROR),
                                 error.get("message", "Unknown error"), error.get("data"))
        return jsonrpc_result(request.id, result)

    def _handle_notification(self, method: str, params: Dict[str, Any]) -> None:
        if method == "notifications/cancelled":
            logger.info(f"Client cancelled request {params.get('requestId')!r}: {params.get('reason', '')}")
        elif method == "notifications/initialized":
            logger.debug("Client finished initialization")
        else:
            logger.debug(f"Ignoring notification {method}")
