"""Tool-call detection in raw model output.

Two forms are recognised, first match wins:

- marker form: a ``TOOL: <name>`` line, optionally followed by an
  ``ARGS: {...}`` line;
- embedded JSON: the first brace-delimited object containing a ``"tool"``
  key, with arguments under ``"parameters"`` or ``"args"``.

Anything else is a final answer. Malformed JSON never raises here.
"""

import re
from typing import Iterable, Iterator

from pocket_agent.codec import JsonValue, parse
from pocket_agent.exceptions import CodecSyntaxError
from pocket_agent.llm import ToolCall
from pocket_agent.logging import get_logger
from pocket_agent.tools.registry import ToolSpec

log = get_logger(__name__)

_TOOL_LINE_RE = re.compile(r"^[ \t]*TOOL[ \t]*:[ \t]*(.*)$", re.IGNORECASE | re.MULTILINE)
_ARGS_LINE_RE = re.compile(r"^[ \t]*ARGS[ \t]*:[ \t]*", re.IGNORECASE | re.MULTILINE)
_MARKUP_LINE_RE = re.compile(r"^[ \t]*(?:TOOL|ARGS)[ \t]*:.*$\n?", re.IGNORECASE | re.MULTILINE)
_TOOL_KEY = '"tool"'


def _object_spans(text: str, start: int = 0) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` of top-level balanced ``{...}`` regions.

    Braces inside string literals are ignored. Scanning stops at the first
    region that never closes.
    """
    pos = text.find("{", start)
    while pos != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for idx in range(pos, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = idx + 1
                    break
        if end == -1:
            return
        yield pos, end
        pos = text.find("{", end)


def _decode_object(text: str) -> dict[str, JsonValue] | None:
    try:
        value = parse(text)
    except CodecSyntaxError as e:
        log.debug("Tool-call JSON rejected", position=e.position, expected=e.expected)
        return None
    return value if isinstance(value, dict) else None


def _canonical_name(name: str, tool_names: Iterable[str]) -> str | None:
    target = name.strip().lower()
    for candidate in tool_names:
        if candidate.lower() == target:
            return candidate
    return None


def _parse_marker_form(text: str, match: re.Match[str], tool_names: set[str]) -> ToolCall | None:
    tokens = match.group(1).strip().strip("`'\"*").split()
    token = tokens[0].strip("`'\"*().").lower() if tokens else ""
    name = _canonical_name(token, tool_names) if token else None
    if name is None:
        log.debug("Unknown tool in marker line", token=token)
        return None

    args: dict[str, JsonValue] = {}
    args_match = _ARGS_LINE_RE.search(text, match.end())
    if args_match is not None:
        remainder = text[args_match.end():]
        if remainder.startswith("{"):
            span = next(_object_spans(remainder), None)
            if span is not None:
                args = _decode_object(remainder[span[0]:span[1]]) or {}
    return ToolCall(name=name, args=args)


def _parse_embedded_json(text: str, tool_names: set[str]) -> ToolCall | None:
    for start, end in _object_spans(text):
        candidate = text[start:end]
        if _TOOL_KEY not in candidate:
            continue
        decoded = _decode_object(candidate)
        if decoded is None:
            return None
        tool = decoded.get("tool")
        if not isinstance(tool, str) or not tool.strip():
            return None
        raw_args = decoded.get("parameters", decoded.get("args"))
        args = raw_args if isinstance(raw_args, dict) else {}
        name = _canonical_name(tool, tool_names) or tool.strip()
        return ToolCall(name=name, args=args)
    return None


def parse_tool_call(model_output: str, tool_names: Iterable[str]) -> ToolCall | None:
    """Extract the first tool invocation from model output.

    Returns:
        The detected call, or None when the text is a final answer
    """
    if not model_output:
        return None
    names = set(tool_names)
    marker = _TOOL_LINE_RE.search(model_output)
    if marker is not None:
        # An unrecognised marker means "no tool", not a fallback to JSON.
        return _parse_marker_form(model_output, marker, names)
    return _parse_embedded_json(model_output, names)


def strip_tool_markup(text: str) -> str:
    """Remove residual ``TOOL:``/``ARGS:`` lines and tool JSON from an answer."""
    cleaned = _MARKUP_LINE_RE.sub("", text or "")
    pieces: list[str] = []
    cursor = 0
    for start, end in _object_spans(cleaned):
        if _TOOL_KEY in cleaned[start:end]:
            pieces.append(cleaned[cursor:start])
            cursor = end
    pieces.append(cleaned[cursor:])
    cleaned = "".join(pieces)
    cleaned = re.sub(r"```(?:json)?\s*```", "", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


_QUOTED_RE = re.compile(r'["“]([^"”]+)["”]')
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_EXPRESSION_RE = re.compile(r"[-(]*\d[\d\s.+\-*/%^×÷()x]*\d\)*|\d+")
_PLACE_RE = re.compile(r"\b(?:in|for|at)\s+([A-Z][\w'-]*(?:\s+[A-Z][\w'-]*)*)")


def _extract_for_parameter(name: str, type_: str, enum: tuple[str, ...] | None, text: str) -> JsonValue | None:
    lowered_name = name.lower()
    if enum:
        lowered_text = text.lower()
        for value in enum:
            if value.lower() in lowered_text:
                return value
        return None
    if "expression" in lowered_name or "equation" in lowered_name:
        match = _EXPRESSION_RE.search(text)
        return match.group(0).strip() if match else None
    if type_ in ("number", "integer"):
        match = _NUMBER_RE.search(text)
        if match is None:
            return None
        literal = match.group(0)
        return float(literal) if "." in literal else int(literal)
    quoted = _QUOTED_RE.search(text)
    if quoted:
        return quoted.group(1).strip()
    if any(key in lowered_name for key in ("city", "location", "place", "country")):
        match = _PLACE_RE.search(text)
        return match.group(1).strip() if match else None
    return None


def fill_missing_arguments(
    spec: ToolSpec,
    args: dict[str, JsonValue],
    source_text: str,
) -> dict[str, JsonValue]:
    """Fill missing required arguments with values guessed from ``source_text``.

    Provided arguments are never overridden. Parameters for which nothing
    plausible is found stay missing.
    """
    filled = dict(args)
    for param in spec.parameters.required:
        if filled.get(param) not in (None, ""):
            continue
        prop = spec.parameters.properties[param]
        value = _extract_for_parameter(param, prop.type, prop.enum, source_text or "")
        if value is not None:
            log.debug("Filled missing tool argument", tool=spec.name, parameter=param)
            filled[param] = value
    return filled
