"""
Error handling package for forge-mcp.
"""

from forge_mcp.error_handling.exceptions import (
    Error,
    NotFoundError,
    ResourceNotFoundError,
    PromptNotFoundError,
    ValidationError,
    ToolTimeoutError,
    TransportError,
    ConfigurationError,
    SamplingNotSupportedError,
    RequestTimeoutError,
    ClientError,
)

__all__ = [
    "Error",
    "NotFoundError",
    "ResourceNotFoundError",
    "PromptNotFoundError",
    "ValidationError",
    "ToolTimeoutError",
    "TransportError",
    "ConfigurationError",
    "SamplingNotSupportedError",
    "RequestTimeoutError",
    "ClientError",
]
