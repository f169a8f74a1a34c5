"""
CodeAct Tool Registry - Central registry for all available tools
"""

import inspect
import json
import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type

from pydantic import BaseModel

from ..errors import ToolArgumentInvalid, ToolDefinitionError, ToolNotFound
from .models import ToolDefinition, ToolExecutionContext, ToolResult, ToolStatus
from .validation import (
    build_arguments_model,
    check_parameters_schema,
    check_tool_name,
    validate_arguments,
)

logger = logging.getLogger(__name__)


def validate_definition(tool: ToolDefinition) -> Type[BaseModel]:
    """
    Check a tool definition and compile its argument model.

    Raises:
        ToolDefinitionError: If the name, schema or executor is malformed
    """
    check_tool_name(tool.name)
    check_parameters_schema(tool.parameters)
    if tool.runtime_action is None and tool.executor is None:
        raise ToolDefinitionError(f"Tool '{tool.name}' has neither an executor nor a runtime action")
    if tool.executor is not None and not callable(tool.executor):
        raise ToolDefinitionError(f"Tool '{tool.name}' executor is not callable")
    return build_arguments_model(tool.parameters, f"{tool.name}_arguments")


class ToolRegistry:
    """
    Registry for managing all available tools

    Tools are loaded once at process start, then the registry is frozen and
    shared read-only by every concurrent run.

    Usage:
        registry = ToolRegistry.get_instance()
        registry.load([run_command_tool, read_file_tool, broken_tool])  # broken one skipped
        registry.freeze()

        schemas = registry.schemas(["run_command"])
        result = await registry.dispatch("read_file", {"path": "a.txt"}, "call_1", context)
    """

    _instance: Optional["ToolRegistry"] = None
    _lock: threading.Lock = threading.Lock()

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}
        self._models: Dict[str, Type[BaseModel]] = {}
        self._frozen = False

    @classmethod
    def get_instance(cls) -> "ToolRegistry":
        """Get process-wide instance"""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset registry (for testing)"""
        with cls._lock:
            cls._instance = None

    # ===== Load time =====

    def register(self, tool: ToolDefinition) -> None:
        """
        Register a tool definition

        Args:
            tool: ToolDefinition to register

        Raises:
            ToolDefinitionError: If the tool is malformed, the name is taken,
                or the registry is frozen
        """
        if self._frozen:
            raise ToolDefinitionError(f"Registry is frozen, cannot register '{tool.name}'")
        if tool.name in self._tools:
            raise ToolDefinitionError(f"Tool '{tool.name}' already registered")

        self._models[tool.name] = validate_definition(tool)
        self._tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name} ({tool.category.value})")

    def load(self, tools: Iterable[ToolDefinition]) -> List[str]:
        """
        Register many tools, skipping malformed ones with a warning

        Returns:
            Names of the tools that were registered
        """
        loaded = []
        for tool in tools:
            try:
                self.register(tool)
            except ToolDefinitionError as e:
                logger.warning(f"Skipping tool '{getattr(tool, 'name', '?')}': {e}")
                continue
            loaded.append(tool.name)
        return loaded

    def unregister(self, name: str) -> bool:
        """
        Unregister a tool by name

        Returns:
            True if tool was unregistered, False if not found
        """
        if self._frozen:
            raise ToolDefinitionError(f"Registry is frozen, cannot unregister '{name}'")
        if name in self._tools:
            del self._tools[name]
            self._models.pop(name, None)
            logger.info(f"Unregistered tool: {name}")
            return True
        return False

    def freeze(self) -> None:
        """Make the registry read-only"""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ===== Lookup =====

    @property
    def tools(self) -> Mapping[str, ToolDefinition]:
        """Read-only view of registered tools"""
        return MappingProxyType(self._tools)

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_all_tool_names(self) -> List[str]:
        return list(self._tools.keys())

    def resolve_allowlist(self, allowlist: Optional[Iterable[str]] = None) -> List[str]:
        """Names visible to a run; None means every registered tool"""
        if allowlist is None:
            return self.get_all_tool_names()
        names = []
        for name in allowlist:
            if name in self._tools:
                names.append(name)
            else:
                logger.warning(f"Unknown tool in allowlist: {name}")
        return names

    def schemas(self, allowlist: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Get OpenAI-format tool schemas

        Args:
            allowlist: Tool names to include (None = all)
        """
        return [self._tools[name].to_openai_schema() for name in self.resolve_allowlist(allowlist)]

    # ===== Run time =====

    def validate(self, name: str, arguments: Any) -> ToolDefinition:
        """
        Look up a tool and validate arguments against its schema

        Raises:
            ToolNotFound: Unknown tool name
            ToolArgumentInvalid: Arguments do not match the schema
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name)
        validate_arguments(name, self._models[name], arguments)
        return tool

    async def dispatch(
        self,
        name: str,
        arguments: Dict[str, Any],
        correlation_id: str,
        context: ToolExecutionContext,
    ) -> ToolResult:
        """
        Validate and execute a tool, normalizing any outcome to a ToolResult

        Never raises for tool-level problems: unknown tools, invalid
        arguments and executor exceptions all become error results.
        """
        metadata = {"action_type": name, "correlation_id": correlation_id}

        try:
            tool = self.validate(name, arguments)
        except (ToolNotFound, ToolArgumentInvalid) as e:
            logger.warning(f"[Tools] {name} rejected: {e}")
            return ToolResult.error(
                str(e),
                metadata={**metadata, "error_type": type(e).__name__},
            )

        if tool.executor is None:
            return ToolResult.error(
                f"Tool '{name}' must be executed by a runtime session",
                metadata={**metadata, "error_type": "ToolNotExecutable"},
            )

        try:
            raw = tool.executor(arguments, context)
            if inspect.isawaitable(raw):
                raw = await raw
        except Exception as e:
            logger.error(f"Tool '{name}' execution failed: {e}", exc_info=True)
            return ToolResult.error(
                f"Error executing {name}: {e}",
                metadata={**metadata, "error_type": type(e).__name__},
            )

        result = normalize_result(raw)
        result.metadata = {**result.metadata, **metadata}
        logger.info(f"[Tools] {name} executed: {result.status.value}")
        return result

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={len(self._tools)} frozen={self._frozen}>"


def normalize_result(raw: Any) -> ToolResult:
    """
    Convert whatever an executor returned into a ToolResult

    Accepted shapes: ToolResult, a dict with ``status``/``content``/``metadata``
    keys, any other dict (treated as structured success data), or any value
    (stringified success content).
    """
    if isinstance(raw, ToolResult):
        return raw

    if isinstance(raw, dict) and "status" in raw and "content" in raw:
        status = ToolStatus.ERROR if str(raw["status"]).lower() in ("error", "failure", "failed") else ToolStatus.SUCCESS
        return ToolResult(
            status=status,
            content=str(raw["content"]),
            metadata=dict(raw.get("metadata") or {}),
            data=raw.get("data"),
            file_path=raw.get("file_path"),
        )

    if isinstance(raw, dict):
        return ToolResult.success(json.dumps(raw, ensure_ascii=False, indent=2, default=str), data=raw)

    return ToolResult.success("" if raw is None else str(raw))
