"""Line reader shared by the Affine IR and Low-level IR text parsers.

Both text forms put one construct per line, so parsing works on stripped
lines matched against anchored regular expressions. Errors carry the line and
column of the offending construct.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from tensorc.ast import Location
from tensorc.errors import IRValidationError

NAME = r"%([\w.]+)"
NAMES = r"%[\w.]+(?:, %[\w.]+)*"
SYMBOL = r"@([\w.]+)"

_NAME_ONLY = re.compile(rf"^{NAME}$")
_DIMS = re.compile(r"^(?:\d+(?:x\d+)*)?$")


class Line(NamedTuple):
    """A non-blank source line with its leading whitespace removed."""

    number: int
    column: int
    text: str

    @property
    def loc(self) -> Location:
        return Location(None, self.number, self.column)

    def error(self, message: str) -> IRValidationError:
        return IRValidationError(message, self.loc)


def read_lines(text: str) -> list[Line]:
    lines = []
    for number, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if stripped:
            lines.append(Line(number, len(raw) - len(raw.lstrip()) + 1, stripped))
    return lines


class LineCursor:
    """Sequential access to the lines of one text module."""

    def __init__(self, lines: list[Line]) -> None:
        self.lines = lines
        self.pos = 0

    @property
    def done(self) -> bool:
        return self.pos >= len(self.lines)

    def peek(self) -> Line | None:
        return None if self.done else self.lines[self.pos]

    def next(self, what: str) -> Line:
        if self.done:
            last = self.lines[-1] if self.lines else Line(1, 1, "")
            raise last.error(f"unexpected end of input, expected {what}")
        line = self.lines[self.pos]
        self.pos += 1
        return line


def split_names(text: str | None, line: Line) -> list[str]:
    """Names of a `%a, %b` list; `None` or empty text is an empty list."""
    if not text:
        return []
    names = []
    for item in text.split(", "):
        m = _NAME_ONLY.match(item)
        if m is None:
            raise line.error(f"expected a %name, got '{item}'")
        names.append(m.group(1))
    return names


def parse_dims(text: str, line: Line) -> tuple[int, ...]:
    """`2x3` as (2, 3); the empty string is a rank-0 shape."""
    if not _DIMS.match(text):
        raise line.error(f"malformed shape '<{text}>'")
    return tuple(int(d) for d in text.split("x")) if text else ()
