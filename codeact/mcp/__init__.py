"""
CodeAct MCP - Expose MCP server tools through the tool registry
"""

from .models import MCPCallResult, MCPTool
from .protocol import MCPClientProtocol
from .provider import MCPToolProvider

__all__ = [
    "MCPCallResult",
    "MCPTool",
    "MCPClientProtocol",
    "MCPToolProvider",
]
