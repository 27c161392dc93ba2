"""
forge-mcp: a Model Context Protocol engine.
"""

__version__ = "0.1.0"
