"""Tools package for Pocket Agent."""

from pocket_agent.tools.registry import (
    Tool,
    ToolArguments,
    ToolExecutor,
    ToolParameterBuilder,
    ToolParameters,
    ToolProperty,
    ToolRegistry,
    ToolSpec,
    define_tool,
)
from pocket_agent.tools.builtin import (
    create_calculator_tool,
    create_default_registry,
    create_time_tool,
    create_weather_tool,
)

__all__ = [
    "Tool",
    "ToolArguments",
    "ToolExecutor",
    "ToolParameterBuilder",
    "ToolParameters",
    "ToolProperty",
    "ToolRegistry",
    "ToolSpec",
    "define_tool",
    "create_calculator_tool",
    "create_default_registry",
    "create_time_tool",
    "create_weather_tool",
]
