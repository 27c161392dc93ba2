"""
forge-mcp core package.
This package provides the dispatcher, the MCP application, its components and
the server transports.
"""
