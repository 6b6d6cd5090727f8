"""Minimal structured-data codec for tool schemas and tool-call arguments.

Values are plain Python objects drawn from a closed set of kinds: ``None``,
``bool``, ``int``, ``float``, ``str``, ``list`` and ``dict`` with string keys
(insertion ordered). ``serialize`` emits compact text with no extraneous
whitespace; ``parse`` is a single-pass recursive-descent reader that fails
fast with :class:`CodecSyntaxError` on the first malformed token.
"""

import math
from typing import Union

from pocket_agent.exceptions import CodecSyntaxError

JsonValue = Union[None, bool, int, float, str, list["JsonValue"], dict[str, "JsonValue"]]

_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

_SERIALIZE_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

_DIGITS = "0123456789"
_HEX_DIGITS = _DIGITS + "abcdefABCDEF"
_WHITESPACE = " \t\n\r"
MAX_DEPTH = 128


class _Reader:
    """Cursor over the input text."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.depth = 0

    def peek(self) -> str | None:
        if self.pos < len(self.text):
            return self.text[self.pos]
        return None

    def next(self) -> str | None:
        if self.pos < len(self.text):
            char = self.text[self.pos]
            self.pos += 1
            return char
        return None

    def skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos] in _WHITESPACE:
            self.pos += 1

    def expect(self, char: str) -> None:
        if self.peek() != char:
            raise CodecSyntaxError(self.pos, repr(char))
        self.pos += 1

    def enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise CodecSyntaxError(self.pos, "shallower nesting")

    def leave(self) -> None:
        self.depth -= 1


def parse(text: str) -> JsonValue:
    """Parse text into a value.

    Empty or whitespace-only input yields ``None``.

    Raises:
        CodecSyntaxError: on the first malformed token, trailing content
            or nesting deeper than ``MAX_DEPTH``.
    """
    reader = _Reader(text or "")
    reader.skip_whitespace()
    if reader.peek() is None:
        return None
    value = _parse_value(reader)
    reader.skip_whitespace()
    if reader.peek() is not None:
        raise CodecSyntaxError(reader.pos, "end of input")
    return value


def _parse_value(reader: _Reader) -> JsonValue:
    reader.skip_whitespace()
    char = reader.peek()
    if char is None:
        raise CodecSyntaxError(reader.pos, "a value")
    if char == "{":
        return _parse_object(reader)
    if char == "[":
        return _parse_array(reader)
    if char == '"':
        return _parse_string(reader)
    if char == "t":
        _consume_literal(reader, "true")
        return True
    if char == "f":
        _consume_literal(reader, "false")
        return False
    if char == "n":
        _consume_literal(reader, "null")
        return None
    if char == "-" or char in _DIGITS:
        return _parse_number(reader)
    raise CodecSyntaxError(reader.pos, "a value")


def _parse_object(reader: _Reader) -> dict[str, JsonValue]:
    reader.expect("{")
    reader.enter()
    result: dict[str, JsonValue] = {}
    reader.skip_whitespace()
    if reader.peek() == "}":
        reader.next()
        reader.leave()
        return result
    while True:
        reader.skip_whitespace()
        if reader.peek() != '"':
            raise CodecSyntaxError(reader.pos, "object key")
        key = _parse_string(reader)
        reader.skip_whitespace()
        reader.expect(":")
        result[key] = _parse_value(reader)
        reader.skip_whitespace()
        separator = reader.peek()
        if separator == "}":
            reader.next()
            reader.leave()
            return result
        if separator != ",":
            raise CodecSyntaxError(reader.pos, "',' or '}'")
        reader.next()


def _parse_array(reader: _Reader) -> list[JsonValue]:
    reader.expect("[")
    reader.enter()
    result: list[JsonValue] = []
    reader.skip_whitespace()
    if reader.peek() == "]":
        reader.next()
        reader.leave()
        return result
    while True:
        result.append(_parse_value(reader))
        reader.skip_whitespace()
        separator = reader.peek()
        if separator == "]":
            reader.next()
            reader.leave()
            return result
        if separator != ",":
            raise CodecSyntaxError(reader.pos, "',' or ']'")
        reader.next()


def _read_hex4(reader: _Reader) -> int:
    start = reader.pos
    digits = reader.text[start:start + 4]
    if len(digits) != 4 or any(d not in _HEX_DIGITS for d in digits):
        raise CodecSyntaxError(start, "4 hex digits")
    reader.pos += 4
    return int(digits, 16)


def _parse_string(reader: _Reader) -> str:
    reader.expect('"')
    chunks: list[str] = []
    while True:
        char = reader.next()
        if char is None:
            raise CodecSyntaxError(reader.pos, "closing '\"'")
        if char == '"':
            return "".join(chunks)
        if char != "\\":
            chunks.append(char)
            continue
        escape = reader.next()
        if escape is None:
            raise CodecSyntaxError(reader.pos, "escape character")
        if escape in _ESCAPES:
            chunks.append(_ESCAPES[escape])
            continue
        if escape != "u":
            raise CodecSyntaxError(reader.pos - 1, "valid escape")
        code = _read_hex4(reader)
        # Join UTF-16 surrogate pairs into one code point.
        if 0xD800 <= code <= 0xDBFF and reader.text.startswith("\\u", reader.pos):
            saved = reader.pos
            reader.pos += 2
            low = _read_hex4(reader)
            if 0xDC00 <= low <= 0xDFFF:
                code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
            else:
                reader.pos = saved
        chunks.append(chr(code))


def _read_digits(reader: _Reader) -> str:
    start = reader.pos
    while (char := reader.peek()) is not None and char in _DIGITS:
        reader.pos += 1
    if reader.pos == start:
        raise CodecSyntaxError(reader.pos, "digit")
    return reader.text[start:reader.pos]


def _parse_number(reader: _Reader) -> int | float:
    start = reader.pos
    is_float = False
    if reader.peek() == "-":
        reader.next()
    integer_start = reader.pos
    digits = _read_digits(reader)
    if len(digits) > 1 and digits[0] == "0":
        raise CodecSyntaxError(integer_start, "no leading zeros")
    if reader.peek() == ".":
        reader.next()
        _read_digits(reader)
        is_float = True
    if reader.peek() in ("e", "E"):
        reader.next()
        if reader.peek() in ("+", "-"):
            reader.next()
        _read_digits(reader)
        is_float = True
    literal = reader.text[start:reader.pos]
    return float(literal) if is_float else int(literal)


def _consume_literal(reader: _Reader, literal: str) -> None:
    start = reader.pos
    if reader.text[start:start + len(literal)] != literal:
        raise CodecSyntaxError(start, repr(literal))
    reader.pos += len(literal)


def _escape(text: str) -> str:
    out: list[str] = []
    for char in text:
        if char in _SERIALIZE_ESCAPES:
            out.append(_SERIALIZE_ESCAPES[char])
        elif ord(char) < 0x20:
            out.append(f"\\u{ord(char):04x}")
        else:
            out.append(char)
    return "".join(out)


def serialize(value: JsonValue) -> str:
    """Serialize a value to compact text.

    Raises:
        TypeError: for values outside the supported kinds.
        ValueError: for non-finite floats.
    """
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Cannot serialize non-finite number: {value}")
        return repr(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, dict):
        items = ",".join(
            f'"{_escape(str(key))}":{serialize(item)}' for key, item in value.items()
        )
        return "{" + items + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(serialize(item) for item in value) + "]"
    raise TypeError(f"Cannot serialize value of type {type(value).__name__}")
