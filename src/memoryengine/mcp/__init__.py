"""MCP server for the memory engine.

This module provides an MCP (Model Context Protocol) server that exposes
the memory engine as tools for MCP-compatible clients.
"""

from .server import create_server, main

__all__ = ["create_server", "main"]
