"""
MCP data structures exchanged with a server client
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class MCPTool:
    """
    A tool advertised by an MCP server

    Attributes:
        name: Tool name as defined by the server
        description: Tool description
        input_schema: JSON Schema for tool parameters
        server_name: Name of the MCP server providing this tool
    """
    name: str
    description: str
    input_schema: Dict[str, Any]
    server_name: str = ""


@dataclass
class MCPCallResult:
    """Result from calling an MCP tool"""
    content: Any
    is_error: bool = False
    error_message: Optional[str] = None
