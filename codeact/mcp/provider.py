"""
MCP Tool Provider - Bridge between MCP servers and the CodeAct ToolRegistry

Each server tool becomes an ordinary ToolDefinition named
``mcp__{server}__{tool}``; the loop cannot tell it apart from a native tool.
Registration happens at load time, before the registry is frozen.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..errors import ToolDefinitionError
from ..tools.models import ToolCategory, ToolDefinition, ToolExecutionContext, ToolResult
from ..tools.registry import ToolRegistry
from .models import MCPTool
from .protocol import MCPClientProtocol

logger = logging.getLogger(__name__)


def _render_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # MCP content blocks: [{"type": "text", "text": "..."}, ...]
        texts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
        if texts and len(texts) == len(content):
            return "\n".join(texts)
    return json.dumps(content, ensure_ascii=False, default=str)


class MCPToolProvider:
    """
    Registers one MCP server's tools into a ToolRegistry

    Example:
        client = MySDKClient("filesystem")
        await client.connect()

        provider = MCPToolProvider(client, registry)
        names = await provider.register_tools()   # ["mcp__filesystem__read", ...]
        registry.freeze()
    """

    def __init__(
        self,
        client: MCPClientProtocol,
        registry: Optional[ToolRegistry] = None,
        tool_prefix: str = "mcp",
    ):
        self.client = client
        self.registry = registry or ToolRegistry.get_instance()
        self.tool_prefix = tool_prefix
        self._registered_tools: List[str] = []

    def _make_tool_name(self, mcp_tool: MCPTool) -> str:
        return f"{self.tool_prefix}__{self.client.server_name}__{mcp_tool.name}"

    def _create_tool_executor(self, mcp_tool: MCPTool):
        """Wrap the client's call_tool as a registry executor"""
        client = self.client
        tool_name = mcp_tool.name
        server_name = self.client.server_name

        async def executor(args: Dict[str, Any], context: ToolExecutionContext) -> ToolResult:
            logger.debug(f"[MCP] {server_name}.{tool_name} args={args}")
            result = await client.call_tool(tool_name, args)
            meta = {"mcp_server": server_name, "mcp_tool": tool_name}
            if result.is_error:
                return ToolResult.error(
                    result.error_message or _render_content(result.content),
                    metadata=meta,
                )
            data = result.content if isinstance(result.content, dict) else None
            return ToolResult.success(_render_content(result.content), metadata=meta, data=data)

        return executor

    def build_definitions(self, mcp_tools: List[MCPTool]) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name=self._make_tool_name(mcp_tool),
                description=f"[MCP:{self.client.server_name}] {mcp_tool.description}",
                parameters=mcp_tool.input_schema or {"type": "object", "properties": {}},
                executor=self._create_tool_executor(mcp_tool),
                category=ToolCategory.MCP,
            )
            for mcp_tool in mcp_tools
        ]

    async def register_tools(self) -> List[str]:
        """
        Fetch tools from the server and register the well-formed ones

        Returns:
            Names of the registered tools

        Raises:
            ConnectionError: Client is not connected
            ToolDefinitionError: Registry is already frozen
        """
        if not self.client.is_connected:
            raise ConnectionError("MCP client not connected. Call client.connect() first.")
        if self.registry.frozen:
            raise ToolDefinitionError("Registry is frozen; register MCP tools before freezing")

        mcp_tools = await self.client.list_tools()
        logger.info(f"[MCP] Found {len(mcp_tools)} tools on server {self.client.server_name}")

        registered = self.registry.load(self.build_definitions(mcp_tools))
        self._registered_tools.extend(registered)

        logger.info(f"[MCP] Registered {len(registered)} tools from {self.client.server_name}")
        return registered

    def get_tool_names(self) -> List[str]:
        return list(self._registered_tools)

    def __repr__(self) -> str:
        return (
            f"MCPToolProvider(server='{self.client.server_name}', "
            f"tools={len(self._registered_tools)})"
        )
