"""Tool registry and tool specification models."""

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pocket_agent.codec import JsonValue
from pocket_agent.exceptions import (
    DuplicateToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from pocket_agent.logging import get_logger

log = get_logger(__name__)

ToolArguments = dict[str, JsonValue]
ToolExecutor = Callable[[ToolArguments], Awaitable[str] | str]


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for lookups."""
    return str(value or "").strip().lower()


class ToolProperty(BaseModel):
    """Schema of a single tool parameter."""

    model_config = ConfigDict(frozen=True)

    type: str = "string"
    description: str | None = None
    enum: tuple[str, ...] | None = None

    def to_definition(self) -> dict[str, JsonValue]:
        definition: dict[str, JsonValue] = {"type": self.type}
        if self.description is not None:
            definition["description"] = self.description
        if self.enum is not None:
            definition["enum"] = list(self.enum)
        return definition


class ToolParameters(BaseModel):
    """Object schema describing a tool's arguments."""

    model_config = ConfigDict(frozen=True)

    properties: dict[str, ToolProperty] = Field(default_factory=dict)
    required: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_required(self) -> "ToolParameters":
        """Required names must be declared properties, without repeats."""
        if len(set(self.required)) != len(self.required):
            raise ValueError("Duplicate names in required parameters")
        unknown = [name for name in self.required if name not in self.properties]
        if unknown:
            raise ValueError(f"Required parameters not declared: {', '.join(unknown)}")
        return self

    def to_definition(self) -> dict[str, JsonValue]:
        return {
            "type": "object",
            "properties": {
                name: prop.to_definition() for name, prop in self.properties.items()
            },
            "required": list(self.required),
        }


class ToolSpec(BaseModel):
    """Immutable description of a tool, embedded in the system prompt."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: ToolParameters = Field(default_factory=ToolParameters)

    @model_validator(mode="after")
    def _check_name(self) -> "ToolSpec":
        if not self.name.strip():
            raise ValueError("Tool must have a name")
        return self

    def to_definition(self) -> dict[str, JsonValue]:
        """Get the tool definition for the model's tool catalogue."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.to_definition(),
        }


@dataclass(frozen=True)
class Tool:
    """A tool specification paired with its executor."""

    spec: ToolSpec
    execute: ToolExecutor

    @property
    def name(self) -> str:
        return self.spec.name


class ToolParameterBuilder:
    """Incremental builder for :class:`ToolParameters`."""

    def __init__(self) -> None:
        self._properties: dict[str, ToolProperty] = {}
        self._required: list[str] = []

    def property(
        self,
        name: str,
        type: str,
        description: str | None = None,
        enum_values: list[str] | None = None,
    ) -> "ToolParameterBuilder":
        self._properties[name] = ToolProperty(
            type=type,
            description=description,
            enum=tuple(enum_values) if enum_values is not None else None,
        )
        return self

    def require(self, name: str) -> "ToolParameterBuilder":
        if name not in self._required:
            self._required.append(name)
        return self

    def build(self) -> ToolParameters:
        return ToolParameters(properties=dict(self._properties), required=tuple(self._required))


def define_tool(
    name: str,
    description: str,
    parameter_block: Callable[[ToolParameterBuilder], Any] | None,
    execute: ToolExecutor,
) -> Tool:
    """Build a :class:`Tool` from a parameter-builder callback and an executor."""
    builder = ToolParameterBuilder()
    if parameter_block is not None:
        parameter_block(builder)
    spec = ToolSpec(name=name, description=description, parameters=builder.build())
    return Tool(spec=spec, execute=execute)


class ToolRegistry:
    """Registry for managing available tools.

    Registration is the only mutation; executing a tool only invokes its
    executor. Lookups are case-insensitive and names are unique regardless
    of case. Timeouts are applied by the caller, not here.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.add(tool)

    def register(self, spec: ToolSpec, executor: ToolExecutor) -> None:
        """Register a tool.

        Raises:
            DuplicateToolError if a tool with the same name exists
        """
        key = _normalize_tool_name(spec.name)
        if key in self._tools:
            raise DuplicateToolError(spec.name)

        log.debug("Registering tool", tool=spec.name)
        self._tools[key] = Tool(spec=spec, execute=executor)

    def add(self, tool: Tool) -> None:
        """Register a prebuilt :class:`Tool`."""
        self.register(tool.spec, tool.execute)

    def resolve(self, name: str) -> ToolSpec | None:
        """Return the spec registered under ``name``, if any."""
        tool = self._tools.get(_normalize_tool_name(name))
        return tool.spec if tool else None

    def list_tools(self) -> list[str]:
        """List registered tool names in registration order."""
        return [tool.name for tool in self._tools.values()]

    def get_definitions(self) -> list[dict[str, JsonValue]]:
        """Get all tool definitions for the model's tool catalogue."""
        return [tool.spec.to_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, name: str, arguments: ToolArguments) -> str:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Decoded tool arguments

        Returns:
            The executor's result text

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if the executor fails
        """
        tool = self._tools.get(_normalize_tool_name(name))
        if tool is None:
            raise ToolNotFoundError(name)

        log.info("Executing tool", tool=tool.name, args=arguments)
        try:
            result = tool.execute(dict(arguments))
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            log.error("Tool execution failed", tool=tool.name, error=str(e))
            raise ToolExecutionError(tool.name, e) from e

        log.info("Tool executed", tool=tool.name)
        return "" if result is None else str(result)
