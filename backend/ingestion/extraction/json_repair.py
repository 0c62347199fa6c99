"""Lenient JSON loading for state blobs embedded in scripts and JSON-LD blocks."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_IDENTIFIER_START = re.compile(r"[A-Za-z_$]")
_IDENTIFIER_RE = re.compile(r"[A-Za-z_$][\w$]*")


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read the quoted literal opening at `start`; return its JSON double-quoted form and the end index."""
    quote = text[start]
    body: list[str] = []
    index = start + 1
    length = len(text)
    while index < length:
        char = text[index]
        if char == "\\" and index + 1 < length:
            nxt = text[index + 1]
            # \' is not a JSON escape
            body.append("'" if nxt == "'" else char + nxt)
            index += 2
            continue
        if char == quote:
            return '"' + "".join(body) + '"', index + 1
        body.append('\\"' if char == '"' else char)
        index += 1
    return '"' + "".join(body), length


def _next_significant(text: str, index: int) -> str:
    length = len(text)
    while index < length and text[index].isspace():
        index += 1
    return text[index] if index < length else ""


def soft_repair_json(raw: str) -> str:
    """Fix the usual hand-written JSON mistakes outside string literals.

    Single-quoted strings become double-quoted, bare keys get quoted and
    trailing commas are dropped. Best effort; the result may still be invalid.
    """
    text = _CONTROL_CHARS_RE.sub("", raw)
    out: list[str] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char in ('"', "'"):
            literal, index = _read_string(text, index)
            out.append(literal)
            continue
        if char == "," and _next_significant(text, index + 1) in ("}", "]"):
            index += 1
            continue
        if _IDENTIFIER_START.match(char) and not (out and (out[-1][-1:].isalnum() or out[-1][-1:] in "_$.")):
            word = _IDENTIFIER_RE.match(text, index).group(0)
            index += len(word)
            out.append(f'"{word}"' if _next_significant(text, index) == ":" else word)
            continue
        out.append(char)
        index += 1
    return "".join(out)


def loads_lenient(raw: str) -> Optional[Any]:
    """`json.loads`, retried once after `soft_repair_json`. None when both fail."""
    try:
        return json.loads(raw)
    except ValueError:
        pass
    try:
        return json.loads(soft_repair_json(raw))
    except ValueError:
        return None


def slice_balanced(text: str, start: int) -> Optional[str]:
    """Return the `{...}` or `[...]` literal beginning at or after `start`, honouring strings."""
    length = len(text)
    while start < length and text[start] not in "{[":
        if not text[start].isspace() and text[start] not in "=(":
            return None
        start += 1
    if start >= length:
        return None

    depth = 0
    quote: Optional[str] = None
    escaped = False
    for index in range(start, length):
        char = text[index]
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in ('"', "'"):
            quote = char
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None
