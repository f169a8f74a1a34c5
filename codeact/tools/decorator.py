"""
CodeAct Tool Decorator - Build tool definitions from typed functions

A decorated function becomes a ToolDefinition whose executor takes
``(args, context)`` like every other tool. The parameter schema is produced
by pydantic from the signature, so the model sees the same JSON Schema that
the registry later validates arguments against.

Usage:
    from codeact.tools import tool

    @tool(memorized=True)
    async def fetch_url(url: str, max_bytes: int = 65536, *, context) -> str:
        '''
        Download a web page

        Args:
            url: Absolute http(s) URL
            max_bytes: Truncate the body after this many bytes
        '''
        ...
"""

import importlib
import inspect
import logging
import pkgutil
import re
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Set, Tuple, Union, get_type_hints
from types import ModuleType

from pydantic import Field, create_model

from .models import ToolCategory, ToolDefinition, ToolExecutionContext
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

# Names the executor fills in itself; never part of the model-facing schema
_INJECTED = frozenset({"self", "cls", "context"})

_SECTION = re.compile(
    r"^(args|arguments|parameters|returns?|yields?|raises|examples?|notes?)\s*:\s*$",
    re.IGNORECASE,
)
_PARAM = re.compile(r"^(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")


class ToolDoc(NamedTuple):
    """What a Google-style docstring says about a tool"""
    summary: str
    params: Dict[str, str]
    returns: str


def _section_key(header: str) -> str:
    header = header.lower()
    if header in ("args", "arguments", "parameters"):
        return "args"
    if header.startswith("return"):
        return "returns"
    return header


def _describe_params(lines: List[str]) -> Dict[str, str]:
    """
    Map parameter names to descriptions.

    A parameter starts at the indentation of the first entry; anything
    indented deeper continues the previous description.
    """
    params: Dict[str, str] = {}
    base: Optional[int] = None
    current: Optional[str] = None
    for line in lines:
        text = line.strip()
        if not text:
            continue
        indent = len(line) - len(line.lstrip())
        if base is None:
            base = indent
        match = _PARAM.match(text) if indent <= base else None
        if match:
            current = match.group(1)
            params[current] = match.group(2).strip()
        elif current is not None:
            params[current] = f"{params[current]} {text}".strip()
    return params


def parse_docstring(docstring: Optional[str]) -> ToolDoc:
    """Split a docstring into its summary paragraph, Args and Returns"""
    sections: Dict[str, List[str]] = {"": []}
    key = ""
    for line in inspect.cleandoc(docstring or "").splitlines():
        header = _SECTION.match(line) if not line[:1].isspace() else None
        if header:
            key = _section_key(header.group(1))
            sections.setdefault(key, [])
        else:
            sections.setdefault(key, []).append(line)

    summary: List[str] = []
    for line in sections[""]:
        if not line.strip():
            if summary:
                break
            continue
        summary.append(line.strip())

    returns = " ".join(line.strip() for line in sections.get("returns", []) if line.strip())
    return ToolDoc(" ".join(summary), _describe_params(sections.get("args", [])), returns)


def _schema_params(func: Callable) -> Iterator[Tuple[str, Any, Any]]:
    """Yield ``(name, annotation, default)`` for every model-facing parameter"""
    try:
        hints = get_type_hints(func)
    except (NameError, TypeError) as e:
        logger.debug(f"[Tools] Unresolved annotations on {func.__name__}, using str: {e}")
        hints = {}

    for name, param in inspect.signature(func).parameters.items():
        if name in _INJECTED or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(name, str)
        if inspect.isclass(annotation) and issubclass(annotation, ToolExecutionContext):
            continue
        yield name, annotation, param.default


def _inline_refs(node: Any, defs: Dict[str, Any]) -> Any:
    """Replace ``$ref`` pointers with the definitions they point to"""
    if isinstance(node, list):
        return [_inline_refs(item, defs) for item in node]
    if not isinstance(node, dict):
        return node
    if "$ref" in node:
        target = defs[node["$ref"].rsplit("/", 1)[-1]]
        return _inline_refs({**target, **{k: v for k, v in node.items() if k != "$ref"}}, defs)
    return {k: _inline_refs(v, defs) for k, v in node.items()}


def _tidy(prop: Dict[str, Any]) -> Dict[str, Any]:
    """Drop pydantic titles and present ``Optional[X]`` as plain ``X``"""
    prop = {k: v for k, v in prop.items() if k != "title"}
    wrapped = prop.get("allOf")
    if isinstance(wrapped, list) and len(wrapped) == 1:
        rest = {k: v for k, v in prop.items() if k != "allOf"}
        prop = {k: v for k, v in {**wrapped[0], **rest}.items() if k != "title"}
    branches = prop.get("anyOf")
    if isinstance(branches, list):
        concrete = [b for b in branches if b.get("type") != "null"]
        if len(concrete) == 1 and len(concrete) < len(branches):
            rest = {k: v for k, v in prop.items() if k != "anyOf"}
            prop = {**concrete[0], **rest}
    prop.pop("title", None)
    if prop.get("default", ...) is None:
        del prop["default"]
    for key in ("items", "additionalProperties"):
        if isinstance(prop.get(key), dict):
            prop[key] = _tidy(prop[key])
    if isinstance(prop.get("properties"), dict):
        prop["properties"] = {k: _tidy(v) for k, v in prop["properties"].items()}
    return prop


def build_parameters_schema(func: Callable, descriptions: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    JSON object schema for the arguments of ``func``.

    Fields are declared under positional names with the parameter name as
    alias, so parameters such as ``json`` or ``schema`` never clash with
    BaseModel attributes.
    """
    descriptions = descriptions or {}
    fields: Dict[str, Any] = {}
    for idx, (name, annotation, default) in enumerate(_schema_params(func)):
        required = default is inspect.Parameter.empty
        fields[f"f{idx}"] = (annotation, Field(
            ... if required else default,
            alias=name,
            description=descriptions.get(name),
        ))

    model = create_model(f"{func.__name__}_arguments", **fields)
    raw = model.model_json_schema(by_alias=True)
    raw = _inline_refs(raw, raw.pop("$defs", {}))
    return {
        "type": "object",
        "properties": {name: _tidy(prop) for name, prop in raw.get("properties", {}).items()},
        "required": list(raw.get("required", [])),
    }


def _make_executor(func: Callable) -> Callable:
    """Adapt ``func(**kwargs[, context=...])`` to ``executor(args, context)``"""
    wants_context = "context" in inspect.signature(func).parameters

    async def executor(args: Dict[str, Any], context: ToolExecutionContext) -> Any:
        kwargs = dict(args, context=context) if wants_context else dict(args)
        result = func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    executor.__name__ = getattr(func, "__name__", "executor")
    return executor


def _category(value: Union[ToolCategory, str]) -> ToolCategory:
    if isinstance(value, ToolCategory):
        return value
    try:
        return ToolCategory(value)
    except ValueError:
        logger.warning(f"[Tools] Unknown tool category {value!r}, using custom")
        return ToolCategory.CUSTOM


def tool(
    name: Optional[str] = None,
    description: Optional[str] = None,
    category: Union[ToolCategory, str] = ToolCategory.CUSTOM,
    memorized: bool = False,
    registry: Optional[ToolRegistry] = None,
) -> Callable:
    """
    Turn a typed function into a tool.

    Args:
        name: Tool name (default: function name)
        description: Tool description (default: docstring summary)
        category: Tool category; unknown names fall back to custom
        memorized: Keep full results in run memory
        registry: Register into this registry immediately (default: leave
            registration to ToolDiscovery at startup)

    Returns:
        The original function with ``_tool_definition`` attached
    """

    def decorator(func: Callable) -> Callable:
        doc = parse_docstring(func.__doc__)
        definition = ToolDefinition(
            name=name or func.__name__,
            description=description or doc.summary or f"Execute {name or func.__name__}",
            parameters=build_parameters_schema(func, doc.params),
            executor=_make_executor(func),
            memorized=memorized,
            category=_category(category),
        )
        if registry is not None:
            registry.register(definition)
        func._tool_definition = definition
        return func

    return decorator


def get_tool_definition(func: Any) -> Optional[ToolDefinition]:
    """The ToolDefinition attached by @tool, if any"""
    return getattr(func, "_tool_definition", None)


class ToolDiscovery:
    """
    Register the @tool functions found in configured modules and packages.

    Tools already known to the registry or seen by an earlier scan are
    skipped, so overlapping paths are safe.

    Usage:
        ToolDiscovery(registry).scan_paths(["myapp.tools"])
    """

    def __init__(self, registry: Optional[ToolRegistry] = None):
        self.registry = registry or ToolRegistry.get_instance()
        self._seen: Set[str] = set()
        self._discovered: List[str] = []

    @staticmethod
    def _import(path: str) -> Optional[ModuleType]:
        try:
            return importlib.import_module(path)
        except ImportError as e:
            logger.warning(f"[Tools] Cannot import tool module {path}: {e}")
            return None

    def _walk(self, path: str) -> Iterator[ModuleType]:
        """The module at ``path`` followed by every importable submodule"""
        root = self._import(path)
        if root is None:
            return
        yield root
        if not hasattr(root, "__path__"):
            return

        def on_error(failed: str) -> None:
            logger.warning(f"[Tools] Cannot import tool package {failed}")

        for info in pkgutil.walk_packages(root.__path__, prefix=f"{path}.", onerror=on_error):
            module = self._import(info.name)
            if module is not None:
                yield module

    def _register_from(self, module: ModuleType) -> int:
        fresh = []
        for _, member in inspect.getmembers(module, get_tool_definition):
            definition = get_tool_definition(member)
            if definition.name in self._seen or self.registry.has_tool(definition.name):
                continue
            self._seen.add(definition.name)
            fresh.append(definition)

        loaded = self.registry.load(fresh)
        self._discovered.extend(loaded)
        if loaded:
            logger.debug(f"[Tools] {module.__name__}: registered {', '.join(loaded)}")
        return len(loaded)

    def scan_module(self, module_path: str) -> int:
        """Register the tools defined in one module; returns how many"""
        module = self._import(module_path)
        return self._register_from(module) if module is not None else 0

    def scan_package(self, package_path: str) -> int:
        """Register the tools of a package and all its submodules"""
        return sum(self._register_from(module) for module in self._walk(package_path))

    def scan_paths(self, paths: List[str]) -> int:
        return sum(self.scan_package(path) for path in paths)

    def get_discovered_tools(self) -> List[str]:
        return list(self._discovered)
