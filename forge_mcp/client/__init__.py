"""
forge-mcp client package.
This module provides the Client call engine, its transports and result types.
"""

from forge_mcp.client.client import CallToolOptions, Client
from forge_mcp.client.sse import SSEParser
from forge_mcp.client.transports import (
    HttpTransport,
    JsonRpcStreamTransport,
    LoopbackTransport,
    StdioTransport,
    Transport,
    WebSocketTransport,
)
from forge_mcp.client.types import CallToolResult, CompleteResult, InitializeResult, ToolInfo

__all__ = [
    "CallToolOptions",
    "Client",
    "SSEParser",
    "Transport",
    "LoopbackTransport",
    "HttpTransport",
    "JsonRpcStreamTransport",
    "WebSocketTransport",
    "StdioTransport",
    "CallToolResult",
    "CompleteResult",
    "InitializeResult",
    "ToolInfo",
]
