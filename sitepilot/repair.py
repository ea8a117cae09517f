"""
Text-level JSON repair passes.

Each pass is a pure function over a string and targets one failure mode
seen in generator output. All of them walk the text with the same small
scanner so that nothing between double quotes is ever touched.
"""

from __future__ import annotations

import json
import re

_FENCE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}

_STRING_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def clean_response(content: str) -> str:
    """Strip a fenced block wrapper and any prose around the payload."""
    cleaned = content.strip()

    match = _FENCE.search(cleaned)
    if match:
        cleaned = match.group(1).strip()

    # a complete value may be a string that itself contains brackets
    if _parses(cleaned):
        return cleaned

    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if starts and min(starts) > 0:
        cleaned = cleaned[min(starts):]

    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if 0 < end < len(cleaned) - 1:
        cleaned = cleaned[: end + 1]

    return cleaned


def _scan(text: str):
    """Yield (index, char, in_string) for every character of `text`.

    `in_string` is True for characters inside a string literal, including
    the closing quote, and False for the opening quote.
    """
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                yield i, ch, True
                in_string = False
                continue
            yield i, ch, True
        else:
            if ch == '"':
                yield i, ch, False
                in_string = True
                continue
            yield i, ch, False


def close_brackets(text: str) -> str | None:
    """Append the closers a truncated document is missing.

    Returns None when the text has a closer without a matching opener,
    since appending can't fix that. A string cut off mid-literal is
    terminated before the brackets are closed.
    """
    stack: list[str] = []
    in_string = False
    escaped = False

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(ch)
        elif ch in _CLOSERS:
            if not stack or stack[-1] != _CLOSERS[ch]:
                return None
            stack.pop()

    repaired = text
    if in_string:
        repaired += "\\" if escaped else ""
        repaired += '"'
    return repaired + "".join(_OPENERS[ch] for ch in reversed(stack))


def strip_trailing_commas(text: str) -> str:
    """Drop commas that sit directly (modulo whitespace) before `]` or `}`."""
    out: list[str] = []
    pending_comma: int | None = None

    for _, ch, in_string in _scan(text):
        if in_string:
            pending_comma = None
            out.append(ch)
            continue
        if ch == ",":
            pending_comma = len(out)
            out.append(ch)
        elif ch.isspace():
            out.append(ch)
        else:
            if ch in _CLOSERS and pending_comma is not None:
                del out[pending_comma]
            pending_comma = None
            out.append(ch)

    return "".join(out)


def _is_bare(ch: str) -> bool:
    return ch.isalnum() or ch in "+-."


def generic_repair(text: str) -> str:
    """Catch-all pass for the remaining common malformations.

    - raw control characters inside strings are escaped
    - stray control characters outside strings are dropped
    - a missing comma between two adjacent values is inserted
    """
    out: list[str] = []
    in_string = False
    escaped = False
    in_bare = False
    value_ended = False

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
                out.append(ch)
            elif ch == "\\":
                escaped = True
                out.append(ch)
            elif ch == '"':
                in_string = False
                value_ended = True
                out.append(ch)
            elif ch in _STRING_ESCAPES:
                out.append(_STRING_ESCAPES[ch])
            elif ord(ch) < 0x20:
                out.append(f"\\u{ord(ch):04x}")
            else:
                out.append(ch)
            continue

        if _is_bare(ch):
            if not in_bare:
                if value_ended:
                    out.append(",")
                in_bare = True
                value_ended = False
            out.append(ch)
            continue

        if in_bare:
            in_bare = False
            value_ended = True

        if ch in " \n\r\t":
            out.append(ch)
        elif ord(ch) < 0x20 or ch == "\x7f":
            continue
        elif ch in ('"', "{", "["):
            if value_ended:
                out.append(",")
            value_ended = False
            in_string = ch == '"'
            out.append(ch)
        elif ch in _CLOSERS:
            value_ended = True
            out.append(ch)
        else:
            # `,` `:` and anything unexpected reset the separator state
            value_ended = False
            out.append(ch)

    return "".join(out)
