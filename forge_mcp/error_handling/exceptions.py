"""
Exceptions for the forge-mcp protocol engine.
This module provides the error taxonomy shared by providers, the dispatcher,
the MCP handler and the client.
"""

from typing import Any, Optional


class Error(Exception):
    """Base exception class for forge-mcp errors."""
    def __init__(self, message: str, code: int = -32000, original_exception: Optional[Exception] = None):
        self.message = message
        self.code = code
        self.original_exception = original_exception
        super().__init__(self.message)

    def to_jsonrpc_error(self) -> dict:
        """Convert exception to JSON-RPC error object."""
        error_data = {
            'exception': self.__class__.__name__,
        }
        if self.original_exception:
            error_data['original_exception'] = str(self.original_exception)
        return {
            'code': self.code,
            'message': self.message,
            'data': error_data
        }


class NotFoundError(Error):
    """Missing tool, resource, prompt or route."""
    def __init__(self, message: str = "Not found", original_exception: Optional[Exception] = None, code: int = -32602):
        super().__init__(message, code=code, original_exception=original_exception)


class ResourceNotFoundError(NotFoundError):
    """Resource or resource template lookup failed."""
    def __init__(self, message: str = "Resource not found", original_exception: Optional[Exception] = None):
        super().__init__(message, original_exception=original_exception, code=-32002)


class PromptNotFoundError(NotFoundError):
    """Prompt lookup failed."""
    def __init__(self, message: str = "Prompt not found", original_exception: Optional[Exception] = None):
        super().__init__(message, original_exception=original_exception, code=-32001)


class ValidationError(Error):
    """Duplicate registration, malformed configuration or malformed response."""
    def __init__(self, message: str = "Validation error occurred", original_exception: Optional[Exception] = None):
        super().__init__(message, code=-32602, original_exception=original_exception)


class ToolTimeoutError(Error):
    """Tool execution exceeded its configured timeout."""
    def __init__(self, message: str = "Tool execution timed out", original_exception: Optional[Exception] = None):
        super().__init__(message, code=-32603, original_exception=original_exception)


class TransportError(Error):
    """Transport-level failure or client-enforced timeout."""
    def __init__(self, message: str = "Transport error occurred", original_exception: Optional[Exception] = None):
        super().__init__(message, code=-32000, original_exception=original_exception)


class ConfigurationError(Error):
    """Configuration error."""
    def __init__(self, message: str = "Configuration error occurred", original_exception: Optional[Exception] = None):
        super().__init__(message, code=-32004, original_exception=original_exception)


class SamplingNotSupportedError(Error):
    """The connected client did not advertise the sampling capability needed."""
    def __init__(self, message: str = "Client does not support sampling", original_exception: Optional[Exception] = None):
        super().__init__(message, code=-32601, original_exception=original_exception)


class RequestTimeoutError(Error):
    """A server-initiated request got no reply in time."""
    def __init__(self, message: str = "Request timed out", original_exception: Optional[Exception] = None):
        super().__init__(message, code=-32001, original_exception=original_exception)


class ClientError(Error):
    """The peer answered a request with a JSON-RPC error."""
    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message, code=code)
        self.data = data
