"""Split migration scripts into individual statements.

Drivers execute one statement at a time, and a failing statement must be
reported by position, so scripts are split on top-level semicolons. The
scanner skips over:

- single, double and backtick quoted text (doubled quotes escape)
- ``--`` line comments and ``/* */`` block comments
- PostgreSQL dollar-quoted bodies (``$$ ... $$``, ``$fn$ ... $fn$``)
- ``CREATE TRIGGER ... BEGIN ... END`` bodies, whose inner statements end
  in semicolons too

Fragments holding only comments and whitespace are dropped.
"""

import re
from typing import Optional

_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

# "-- migrate:up", "-- migrate:down", or the "-- Up Migration" style headings
_SECTION_MARKER = re.compile(
    r"^[ \t]*--[ \t]*(?:migrate:[ \t]*(up|down)\b|(up|down)[ \t]+migration\b).*$",
    re.IGNORECASE | re.MULTILINE,
)


class ScriptSyntaxError(ValueError):
    """Script text could not be scanned (unterminated quote or comment)."""

    def __init__(self, message: str, offset: int):
        super().__init__(f"{message} at offset {offset}")
        self.offset = offset


def _skip_quoted(script: str, start: int, quote: str) -> int:
    pos = start + 1
    while True:
        end = script.find(quote, pos)
        if end == -1:
            raise ScriptSyntaxError(f"unterminated {quote} quote", start)
        if script[end + 1:end + 2] == quote:
            pos = end + 2
            continue
        return end + 1


def _skip_block_comment(script: str, start: int) -> int:
    depth = 1
    pos = start + 2
    while depth:
        if pos >= len(script):
            raise ScriptSyntaxError("unterminated block comment", start)
        if script.startswith("/*", pos):
            depth += 1
            pos += 2
        elif script.startswith("*/", pos):
            depth -= 1
            pos += 2
        else:
            pos += 1
    return pos


def _is_trigger(words: list[str]) -> bool:
    return bool(words) and words[0] == "CREATE" and "TRIGGER" in words[1:3]


def split_statements(script: str) -> list[str]:
    """Split ``script`` into statements, without trailing semicolons.

    Raises:
        ScriptSyntaxError: on an unterminated quote, comment or dollar quote.
    """
    statements: list[str] = []
    length = len(script)
    start = 0
    pos = 0
    has_code = False
    words: list[str] = []
    depth = 0

    def flush(end: int) -> None:
        nonlocal start, has_code, words, depth
        if has_code:
            text = script[start:end].strip()
            if text:
                statements.append(text)
        start = end + 1
        has_code = False
        words = []
        depth = 0

    while pos < length:
        ch = script[pos]
        nxt = script[pos + 1] if pos + 1 < length else ""

        if ch == "-" and nxt == "-":
            newline = script.find("\n", pos)
            pos = length if newline == -1 else newline + 1
            continue

        if ch == "/" and nxt == "*":
            pos = _skip_block_comment(script, pos)
            continue

        if ch in "'\"`":
            has_code = True
            pos = _skip_quoted(script, pos, ch)
            continue

        if ch == "$":
            match = _DOLLAR_TAG.match(script, pos)
            if match:
                tag = match.group(0)
                close = script.find(tag, match.end())
                if close == -1:
                    raise ScriptSyntaxError(f"unterminated {tag} quote", pos)
                has_code = True
                pos = close + len(tag)
                continue

        if ch.isalpha() or ch == "_":
            end = pos + 1
            while end < length and (script[end].isalnum() or script[end] == "_"):
                end += 1
            word = script[pos:end].upper()
            has_code = True
            if len(words) < 3:
                words.append(word)
            if _is_trigger(words):
                if word in ("BEGIN", "CASE"):
                    depth += 1
                elif word == "END" and depth > 0:
                    depth -= 1
            pos = end
            continue

        if ch == ";":
            if depth == 0:
                flush(pos)
            pos += 1
            continue

        if not ch.isspace():
            has_code = True
        pos += 1

    flush(length)
    return statements


def _opening_kind(script: str, markers: list[re.Match]) -> Optional[str]:
    # Kind of the marker over the first statements; None if they precede every marker
    if split_statements(script[:markers[0].start()]):
        return None
    for index, marker in enumerate(markers):
        end = markers[index + 1].start() if index + 1 < len(markers) else len(script)
        if split_statements(script[marker.end():end]):
            return (marker.group(1) or marker.group(2)).lower()
    return None


def split_sections(script: str) -> tuple[str, Optional[str]]:
    """Split a single-file migration into its up and down sections.

    Returns ``(script, None)`` when the script has no section markers.
    ``-- Up Migration`` style headings read like ordinary comments, so a
    script marked only by headings is split only when its first statements
    sit under an up heading; otherwise it is all up script. ``-- migrate:``
    directives always mark sections.

    Raises:
        ValueError: for directive-marked scripts with repeated sections, a
            down section without an up section, or statements before the
            first marker.
    """
    markers = list(_SECTION_MARKER.finditer(script))
    if not markers:
        return script, None

    directives = any(marker.group(1) for marker in markers)
    if not directives and _opening_kind(script, markers) != "up":
        return script, None

    preamble = script[:markers[0].start()]
    if split_statements(preamble):
        raise ValueError("statements found before the first section marker")

    sections: dict[str, str] = {}
    for index, marker in enumerate(markers):
        kind = (marker.group(1) or marker.group(2)).lower()
        if kind in sections:
            raise ValueError(f"more than one {kind} section")
        end = markers[index + 1].start() if index + 1 < len(markers) else len(script)
        sections[kind] = script[marker.end():end]

    if "up" not in sections:
        raise ValueError("down section without an up section")

    return sections["up"], sections.get("down")
