"""
Tool schema checks and argument validation.

Parameter schemas are JSON Schema objects. At registration time each schema is
checked for well-formedness and compiled into a pydantic model; arguments from
the model are validated against that compiled model before dispatch.
"""

import re
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

from ..errors import ToolArgumentInvalid, ToolDefinitionError

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]{0,63}$")

_JSON_TYPES = {"string", "integer", "number", "boolean", "array", "object", "null"}

_SCALARS: Dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
    "null": type(None),
}


def check_tool_name(name: Any) -> None:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise ToolDefinitionError(f"Invalid tool name: {name!r}")


def check_parameters_schema(schema: Any, path: str = "parameters") -> None:
    """
    Raise ToolDefinitionError unless ``schema`` is a well-formed object schema.

    Args:
        schema: JSON Schema dict
        path: Location used in error messages
    """
    if not isinstance(schema, dict):
        raise ToolDefinitionError(f"{path} must be a dict")
    if schema.get("type", "object") != "object":
        raise ToolDefinitionError(f"{path} must have type 'object'")

    properties = schema.get("properties", {})
    if not isinstance(properties, dict):
        raise ToolDefinitionError(f"{path}.properties must be a dict")

    for prop_name, prop in properties.items():
        _check_property(prop, f"{path}.properties.{prop_name}")

    required = schema.get("required", [])
    if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
        raise ToolDefinitionError(f"{path}.required must be a list of strings")
    missing = [r for r in required if r not in properties]
    if missing:
        raise ToolDefinitionError(f"{path}.required names unknown properties: {missing}")


def _check_property(prop: Any, path: str) -> None:
    if not isinstance(prop, dict):
        raise ToolDefinitionError(f"{path} must be a dict")

    prop_type = prop.get("type")
    types = prop_type if isinstance(prop_type, list) else [prop_type] if prop_type else []
    for t in types:
        if t not in _JSON_TYPES:
            raise ToolDefinitionError(f"{path} has unknown type {t!r}")

    if "enum" in prop and not isinstance(prop["enum"], list):
        raise ToolDefinitionError(f"{path}.enum must be a list")
    if "object" in types and "properties" in prop:
        check_parameters_schema(prop, path)
    if "array" in types and "items" in prop:
        _check_property(prop["items"], f"{path}.items")


def _python_type(prop: Dict[str, Any], model_name: str) -> Any:
    """Map one JSON Schema property to a pydantic-compatible annotation"""
    if "enum" in prop and prop["enum"]:
        return Literal[tuple(prop["enum"])]

    prop_type = prop.get("type")
    if isinstance(prop_type, list):
        members = tuple(_python_type({**prop, "type": t}, model_name) for t in prop_type)
        return Union[members] if len(members) > 1 else members[0]

    if prop_type in _SCALARS:
        return _SCALARS[prop_type]
    if prop_type == "array":
        items = prop.get("items")
        if isinstance(items, dict) and items:
            return List[_python_type(items, f"{model_name}Item")]
        return List[Any]
    if prop_type == "object":
        if isinstance(prop.get("properties"), dict):
            return build_arguments_model(prop, model_name)
        return Dict[str, Any]
    return Any


def build_arguments_model(schema: Dict[str, Any], model_name: str) -> Type[BaseModel]:
    """
    Compile a JSON object schema into a pydantic model.

    Fields are declared under positional names with the property name as
    alias, so properties such as ``schema`` or ``json`` never collide with
    BaseModel attributes.
    """
    properties: Dict[str, Any] = schema.get("properties", {})
    required = set(schema.get("required", []))
    extra = "forbid" if schema.get("additionalProperties") is False else "allow"

    fields: Dict[str, Tuple[Any, Any]] = {}
    for idx, (prop_name, prop) in enumerate(properties.items()):
        annotation = _python_type(prop, f"{model_name}_{idx}")
        if prop_name in required:
            fields[f"f{idx}"] = (annotation, Field(..., alias=prop_name))
        else:
            fields[f"f{idx}"] = (
                Optional[annotation],
                Field(prop.get("default"), alias=prop_name),
            )

    return create_model(
        model_name,
        __config__=ConfigDict(extra=extra, populate_by_name=False),
        **fields,
    )


def _format_errors(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        messages.append(f"{loc}: {err.get('msg', 'invalid')}")
    return messages


def validate_arguments(
    tool_name: str,
    model: Type[BaseModel],
    arguments: Any,
) -> Dict[str, Any]:
    """
    Validate ``arguments`` against a compiled arguments model.

    Returns:
        The original arguments dict

    Raises:
        ToolArgumentInvalid: If arguments are not a dict or fail validation
    """
    if not isinstance(arguments, dict):
        raise ToolArgumentInvalid(tool_name, [f"arguments must be an object, got {type(arguments).__name__}"])
    try:
        model.model_validate(arguments)
    except ValidationError as e:
        raise ToolArgumentInvalid(tool_name, _format_errors(e)) from e
    return arguments
