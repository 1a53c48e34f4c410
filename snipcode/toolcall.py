"""Extraction of tool_call(...) requests from generated text.

The accepted syntax is::

    tool_call(name="read_file", arguments={"file_path": "a.py"})
    tool_call(tool_name="read_file", args={"file_path": "a.py"})

Argument objects are parsed as strict JSON first. When that fails they go
through a tolerant recursive-descent reader (see ``parse_lenient``) that
recovers from the mistakes models tend to make when writing JSON by hand.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

CALL_TOKEN = "tool_call("

_NAME_RE = re.compile(r'\b(?:tool_name|name)\s*=\s*"([^"]+)"')
_ARGS_RE = re.compile(r"\b(?:arguments|args)\s*=\s*(?=\{)")


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation found in model output."""

    name: str
    arguments: Any


class RepairError(ValueError):
    """Raised when text cannot be recovered into a JSON value."""


# ---------------------------------------------------------------------------
# Tolerant JSON reader
# ---------------------------------------------------------------------------

_WS = " \t\r\n"
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_HEX4_RE = re.compile(r"[0-9a-fA-F]{4}")
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
_KEY_CLOSERS = ":"
_VALUE_CLOSERS = ",}]"


class _LenientParser:
    """Recursive-descent JSON reader with a fixed set of recovery rules.

    1. A double quote inside a string ends the string only when the next
       non-blank character may follow it: ``:`` after an object key;
       ``,``, ``}``, ``]`` or end of input after a value. Any other double
       quote is kept as part of the string.
    2. Raw newline, carriage return and tab characters inside a string are
       kept as the characters they stand for.
    3. A comma directly before ``}`` or ``]`` is ignored.
    4. A backslash that does not start a valid escape is kept literally.

    Anything else must be well-formed JSON, or RepairError is raised.
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self) -> Any:
        value = self._value()
        if self._peek():
            raise RepairError(f"unexpected trailing data at offset {self.pos}")
        return value

    def _peek(self) -> str:
        while self.pos < len(self.text) and self.text[self.pos] in _WS:
            self.pos += 1
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _value(self) -> Any:
        ch = self._peek()
        if ch == "{":
            return self._object()
        if ch == "[":
            return self._array()
        if ch == '"':
            return self._string(_VALUE_CLOSERS)
        if not ch:
            raise RepairError("unexpected end of input")
        for literal, value in (("true", True), ("false", False), ("null", None)):
            if self.text.startswith(literal, self.pos):
                self.pos += len(literal)
                return value
        m = _NUMBER_RE.match(self.text, self.pos)
        if m:
            self.pos = m.end()
            return json.loads(m.group())
        raise RepairError(f"unexpected character {ch!r} at offset {self.pos}")

    def _object(self) -> dict:
        self.pos += 1
        result: dict = {}
        if self._peek() == "}":
            self.pos += 1
            return result
        while True:
            if self._peek() != '"':
                raise RepairError(f"expected a quoted key at offset {self.pos}")
            key = self._string(_KEY_CLOSERS)
            if self._peek() != ":":
                raise RepairError(f"expected ':' at offset {self.pos}")
            self.pos += 1
            result[key] = self._value()
            ch = self._peek()
            if ch == ",":
                self.pos += 1
                if self._peek() == "}":
                    self.pos += 1
                    return result
            elif ch == "}":
                self.pos += 1
                return result
            else:
                raise RepairError(f"expected ',' or '}}' at offset {self.pos}")

    def _array(self) -> list:
        self.pos += 1
        result: list = []
        if self._peek() == "]":
            self.pos += 1
            return result
        while True:
            result.append(self._value())
            ch = self._peek()
            if ch == ",":
                self.pos += 1
                if self._peek() == "]":
                    self.pos += 1
                    return result
            elif ch == "]":
                self.pos += 1
                return result
            else:
                raise RepairError(f"expected ',' or ']' at offset {self.pos}")

    def _string(self, closers: str) -> str:
        text = self.text
        self.pos += 1
        chars: list[str] = []
        while self.pos < len(text):
            ch = text[self.pos]
            if ch == "\\":
                decoded, width = self._escape()
                chars.append(decoded)
                self.pos += width
            elif ch == '"' and self._closes_string(closers):
                self.pos += 1
                return "".join(chars)
            else:
                chars.append(ch)
                self.pos += 1
        raise RepairError("unterminated string")

    def _escape(self) -> tuple[str, int]:
        text, pos = self.text, self.pos
        nxt = text[pos + 1 : pos + 2]
        if nxt in _ESCAPES:
            return _ESCAPES[nxt], 2
        if nxt == "u" and _HEX4_RE.fullmatch(text[pos + 2 : pos + 6]):
            code = int(text[pos + 2 : pos + 6], 16)
            low = text[pos + 8 : pos + 12]
            if (
                0xD800 <= code < 0xDC00
                and text.startswith("\\u", pos + 6)
                and _HEX4_RE.fullmatch(low)
                and 0xDC00 <= int(low, 16) < 0xE000
            ):
                pair = 0x10000 + ((code - 0xD800) << 10) + (int(low, 16) - 0xDC00)
                return chr(pair), 12
            return chr(code), 6
        return "\\", 1

    def _closes_string(self, closers: str) -> bool:
        j = self.pos + 1
        while j < len(self.text) and self.text[j] in _WS:
            j += 1
        if j == len(self.text):
            return closers == _VALUE_CLOSERS
        return self.text[j] in closers


def parse_lenient(text: str) -> Any:
    """Parse JSON-like *text*, applying the recovery rules of _LenientParser.

    Raises RepairError if the text cannot be recovered.
    """
    return _LenientParser(text).parse()


def parse_arguments(text: str) -> Any:
    """Parse an argument object: strict JSON first, then the tolerant reader."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    return parse_lenient(text)


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def _find_closing(text: str, open_idx: int, opener: str, closer: str) -> int:
    """Return the index of the *closer* matching the *opener* at *open_idx*, or -1.

    Characters inside double-quoted strings are not counted, so a stray
    ``)`` or ``}`` in an argument value does not end the scan.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_idx, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    return i
    return -1


def _find_closing_paren(text: str, open_idx: int) -> int:
    return _find_closing(text, open_idx, "(", ")")


def _find_closing_brace(text: str, open_idx: int) -> int:
    """Return the index just past the brace closing the one at *open_idx*, or -1."""
    end = _find_closing(text, open_idx, "{", "}")
    return -1 if end == -1 else end + 1


def _extract_at(text: str, start: int) -> tuple[ToolCallRequest | None, int]:
    """Try to parse the call whose token starts at *start*.

    Returns (request, closing_paren_index); request is None on failure.
    """
    open_idx = start + len(CALL_TOKEN) - 1
    close_idx = _find_closing_paren(text, open_idx)
    if close_idx == -1:
        return None, -1
    inside = text[open_idx + 1 : close_idx]

    name_match = _NAME_RE.search(inside)
    args_match = _ARGS_RE.search(inside)
    if not name_match or not args_match:
        return None, close_idx

    json_start = args_match.end()
    json_end = _find_closing_brace(inside, json_start)
    if json_end == -1:
        return None, close_idx

    try:
        arguments = parse_arguments(inside[json_start:json_end])
    except RepairError as e:
        logger.debug("Rejected tool_call %r: %s", name_match.group(1), e)
        return None, close_idx
    return ToolCallRequest(name=name_match.group(1), arguments=arguments), close_idx


def extract_tool_calls(text: str) -> list[ToolCallRequest]:
    """Return every parseable tool call in *text*, in order of appearance.

    Malformed occurrences are skipped; this never raises.
    """
    calls: list[ToolCallRequest] = []
    pos = 0
    while True:
        start = text.find(CALL_TOKEN, pos)
        if start == -1:
            break
        call, close_idx = _extract_at(text, start)
        if call is None:
            pos = start + len(CALL_TOKEN)
        else:
            calls.append(call)
            pos = close_idx + 1
    return calls


def extract_tool_call(text: str) -> ToolCallRequest | None:
    """Return the first parseable tool call in *text*, or None."""
    calls = extract_tool_calls(text)
    return calls[0] if calls else None
