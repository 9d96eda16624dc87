import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError as JSONSchemaError
from jsonschema.exceptions import ValidationError, best_match

from ..errors import SchemaError, ToolNotFound

logger = logging.getLogger(__name__)

Executor = Callable[..., Any]


@dataclass(frozen=True)
class ToolDef:
    """A registered tool: input schema, executor and gating metadata."""

    name: str
    schema: Dict[str, Any]
    executor: Executor
    side_effecting: bool
    description: str = ""
    editable: bool = True


def _error_field(error: ValidationError) -> str:
    path = [str(p) for p in error.absolute_path]
    if error.validator == "required" and isinstance(error.instance, dict):
        missing = [p for p in error.validator_value if p not in error.instance]
        if missing:
            path.append(str(missing[0]))
    elif error.validator == "additionalProperties" and isinstance(error.instance, dict):
        declared = (error.schema or {}).get("properties", {})
        extra = [p for p in error.instance if p not in declared]
        if extra:
            path.append(str(extra[0]))
    return ".".join(path)


class ToolRegistry:
    """Name -> ToolDef mapping, validated at registration time."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDef] = {}
        self._validators: Dict[str, Draft7Validator] = {}

    def register(
        self,
        name: str,
        schema: Dict[str, Any],
        executor: Executor,
        side_effecting: bool,
        *,
        description: str = "",
        editable: bool = True,
    ) -> ToolDef:
        """Register a tool.

        Args:
            name: Unique tool name exposed to the model.
            schema: JSON Schema (type "object") describing the arguments.
            executor: Callable invoked with the validated arguments as keywords.
                May be sync or async.
            side_effecting: Whether invocations must pass through human review.
            description: Description shown to the model.
            editable: Whether a reviewer may edit the arguments before running.

        Raises:
            ValueError: If the name is taken, the executor is not callable or
                the schema is not a valid JSON Schema object.
        """
        if not name or not name.strip():
            raise ValueError("Tool name must be a non-empty string")
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        if not callable(executor):
            raise ValueError(f"Executor for {name} is not callable")
        if schema.get("type") != "object":
            raise ValueError(f"Schema for {name} must have type 'object'")
        try:
            Draft7Validator.check_schema(schema)
        except JSONSchemaError as e:
            raise ValueError(f"Invalid schema for {name}: {e.message}") from e

        tool = ToolDef(
            name=name,
            schema=copy.deepcopy(schema),
            executor=executor,
            side_effecting=side_effecting,
            description=description,
            editable=editable,
        )
        self._tools[name] = tool
        self._validators[name] = Draft7Validator(tool.schema)
        logger.debug("Registered tool %s (side_effecting=%s)", name, side_effecting)
        return tool

    def get(self, name: str) -> ToolDef:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFound(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def validate(self, name: str, arguments: Any) -> Dict[str, Any]:
        """Return a sanitized copy of ``arguments`` or raise SchemaError.

        Undeclared properties are dropped unless the schema forbids extras
        (then they fail validation). Declared defaults are filled in.
        """
        tool = self.get(name)
        if not isinstance(arguments, dict):
            raise SchemaError("", "arguments must be an object")

        properties: Dict[str, Any] = tool.schema.get("properties", {})
        if tool.schema.get("additionalProperties") is False:
            sanitized = copy.deepcopy(arguments)
        else:
            sanitized = {k: copy.deepcopy(v) for k, v in arguments.items() if k in properties}
        for prop, prop_schema in properties.items():
            if prop not in sanitized and isinstance(prop_schema, dict) and "default" in prop_schema:
                sanitized[prop] = copy.deepcopy(prop_schema["default"])

        error = best_match(self._validators[name].iter_errors(sanitized))
        if error is not None:
            raise SchemaError(_error_field(error), error.message)
        return sanitized

    def catalog(self) -> List[Dict[str, Any]]:
        """Return tool schemas in OpenAI function format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.schema,
                },
            }
            for tool in self._tools.values()
        ]
