"""Demo tools: calculator, clock and a mock weather report."""

import ast
import operator
from datetime import UTC, datetime

from pocket_agent.tools.registry import Tool, ToolArguments, ToolRegistry, define_tool

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_MAX_EXPONENT = 100


def _evaluate_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate_node(node.left)
        right = _evaluate_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ValueError("Exponent too large")
        return _BINARY_OPERATORS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate_node(node.operand))
    raise ValueError("Unsupported expression")


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without ``eval``.

    Supports numbers, ``+ - * / % **``, parentheses and unary signs.
    ``x``/``×`` and ``÷`` are accepted as multiplication and division.
    """
    cleaned = (
        expression.strip()
        .replace("×", "*")
        .replace("÷", "/")
        .replace("^", "**")
        .replace("x", "*")
    )
    if not cleaned:
        raise ValueError("Empty expression")
    try:
        tree = ast.parse(cleaned, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {expression}") from e
    return _evaluate_node(tree)


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _calculate(args: ToolArguments) -> str:
    expression = args.get("expression")
    if not isinstance(expression, str) or not expression.strip():
        return "No calculation needed"
    try:
        result = evaluate_expression(expression)
    except (ValueError, ZeroDivisionError, OverflowError) as e:
        return f"Sorry, I couldn't calculate that: {e}"
    return f"The result of {expression} is {_format_number(result)}"


def _current_time(args: ToolArguments) -> str:
    return f"Current time: {datetime.now(UTC).isoformat()}"


def _weather(args: ToolArguments) -> str:
    city = args.get("city")
    if not isinstance(city, str) or not city.strip():
        city = "Unknown"
    return f"Weather in {city}: 72°F (22°C), Sunny with light clouds"


def create_calculator_tool() -> Tool:
    return define_tool(
        name="calculate",
        description="Perform basic arithmetic calculations",
        parameter_block=lambda p: p.property(
            "expression", "string", "Mathematical expression"
        ).require("expression"),
        execute=_calculate,
    )


def create_time_tool() -> Tool:
    return define_tool(
        name="get_current_time",
        description="Get the current date and time",
        parameter_block=None,
        execute=_current_time,
    )


def create_weather_tool() -> Tool:
    return define_tool(
        name="get_weather",
        description="Get current weather information for a city",
        parameter_block=lambda p: p.property("city", "string", "Name of the city").require("city"),
        execute=_weather,
    )


def create_default_registry() -> ToolRegistry:
    """Registry with the calculator, time and weather tools."""
    return ToolRegistry([
        create_calculator_tool(),
        create_time_tool(),
        create_weather_tool(),
    ])
