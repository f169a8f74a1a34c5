"""
MCP Client Protocol - what the bridge needs from an MCP client

The transport itself (stdio, SSE, websocket) is supplied by the caller,
typically a thin wrapper around the official MCP SDK.
"""

from typing import Any, Dict, List, Protocol, runtime_checkable

from .models import MCPCallResult, MCPTool


@runtime_checkable
class MCPClientProtocol(Protocol):
    """
    Abstract interface for MCP clients

    Example:
        class SDKClient:
            server_name = "filesystem"
            is_connected = True

            async def list_tools(self) -> List[MCPTool]:
                ...

            async def call_tool(self, name: str, arguments: Dict) -> MCPCallResult:
                ...
    """

    @property
    def server_name(self) -> str:
        ...

    @property
    def is_connected(self) -> bool:
        ...

    async def list_tools(self) -> List[MCPTool]:
        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> MCPCallResult:
        ...
