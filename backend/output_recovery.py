"""Recover a JSON object from noisy model output.

The cascade tries, in order: a direct parse, the first fenced code block, the
first balanced ``{...}`` span, the first-``{``-to-last-``}`` substring and an
emergency auto-close. Extracted candidates go through the structural repairs in
``REPAIRS`` one at a time, re-parsing after each and stopping at the first
success, so valid structure is never rewritten more than needed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```[ \t]*[\w+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_CLOSERS = {"{": "}", "[": "]"}
_OPENERS = {"}": "{", "]": "["}


@dataclass(frozen=True)
class Parsed:
    value: dict[str, Any]
    stage: str
    repairs: tuple[str, ...] = ()


@dataclass(frozen=True)
class Unrecoverable:
    reason: str


RecoveredOutput = Parsed | Unrecoverable


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text, strict=False)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def remove_trailing_commas(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)

    for index, char in enumerate(text):
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == ",":
            lookahead = index + 1
            while lookahead < length and text[lookahead].isspace():
                lookahead += 1
            if lookahead < length and text[lookahead] in "}]":
                continue
        elif char == '"':
            in_string = True
        out.append(char)

    return "".join(out)


def insert_missing_commas(text: str) -> str:
    """Insert commas between adjacent values that JSON requires to be separated.

    Handles ``"a" "b"``, ``} {``, ``] [`` and a closing string or bracket
    followed by a quoted key.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    previous = ""
    previous_end = 0

    for char in text:
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
                previous = '"'
                previous_end = len(out)
            continue

        if char.isspace():
            out.append(char)
            continue

        needs_comma = (
            (char == '"' and previous in ('"', "}", "]"))
            or (char == "{" and previous == "}")
            or (char == "[" and previous == "]")
        )
        if needs_comma:
            out.insert(previous_end, ",")

        out.append(char)
        if char == '"':
            in_string = True
        else:
            previous = char
            previous_end = len(out)

    return "".join(out)


def close_unterminated_string(text: str) -> str:
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif in_string and char == "\\":
            escaped = True
        elif char == '"':
            in_string = not in_string

    if not in_string:
        return text
    if escaped:
        text = text[:-1]
    return text + '"'


def balance_brackets(text: str) -> str:
    """Append the closers for every ``{``/``[`` still open at the end of ``text``."""
    stack: list[str] = []
    in_string = False
    escaped = False

    for char in text:
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
        elif char in _CLOSERS:
            stack.append(char)
        elif char in _OPENERS and stack and stack[-1] == _OPENERS[char]:
            stack.pop()

    if in_string or not stack:
        return text

    body = text.rstrip()
    if body.endswith(","):
        body = body[:-1].rstrip()
    elif body.endswith(":"):
        body += " null"
    return body + "".join(_CLOSERS[opener] for opener in reversed(stack))


REPAIRS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("trailing_commas", remove_trailing_commas),
    ("missing_commas", insert_missing_commas),
    ("unterminated_string", close_unterminated_string),
    ("unbalanced_brackets", balance_brackets),
)


def parse_with_repair(text: str) -> tuple[dict[str, Any], tuple[str, ...]] | None:
    value = _loads_object(text)
    if value is not None:
        return value, ()

    repaired = text
    applied: list[str] = []
    for name, repair in REPAIRS:
        candidate = repair(repaired)
        if candidate == repaired:
            continue
        repaired = candidate
        applied.append(name)
        value = _loads_object(repaired)
        if value is not None:
            return value, tuple(applied)
    return None


def extract_fenced_block(text: str) -> str | None:
    match = _FENCE_PATTERN.search(text)
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


def extract_balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
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
                return text[start : index + 1]
    return None


def extract_outer_braces(text: str) -> str | None:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    return text[first : last + 1]


def _emergency_candidate(text: str) -> str | None:
    first = text.find("{")
    if first == -1:
        return None
    return balance_brackets(close_unterminated_string(text[first:].rstrip()))


_EXTRACTION_STAGES: tuple[tuple[str, Callable[[str], str | None]], ...] = (
    ("fenced_block", extract_fenced_block),
    ("balanced_braces", extract_balanced_object),
    ("outer_braces", extract_outer_braces),
)


def recover(raw_text: str | None) -> RecoveredOutput:
    if not isinstance(raw_text, str) or not raw_text.strip():
        return Unrecoverable("Model output was empty.")

    cleaned = raw_text.strip()
    value = _loads_object(cleaned)
    if value is not None:
        return Parsed(value=value, stage="direct")
    logger.debug("Direct JSON parse failed for %s characters of model output", len(cleaned))

    for stage, extract in _EXTRACTION_STAGES:
        candidate = extract(cleaned)
        if candidate is None:
            continue
        outcome = parse_with_repair(candidate)
        if outcome is None:
            logger.debug("Recovery stage %s found a candidate but could not parse it", stage)
            continue
        value, repairs = outcome
        if repairs:
            logger.info("Recovered JSON via %s after repairs: %s", stage, ", ".join(repairs))
        return Parsed(value=value, stage=stage, repairs=repairs)

    emergency = _emergency_candidate(cleaned)
    if emergency is not None:
        value = _loads_object(emergency)
        if value is not None:
            logger.info("Recovered JSON via emergency auto-close")
            return Parsed(value=value, stage="emergency", repairs=("auto_close",))

    logger.warning(
        "No JSON object recoverable from model output (%s chars); head=%r",
        len(cleaned),
        cleaned[:200],
    )
    return Unrecoverable(
        f"No JSON object could be recovered from {len(cleaned)} characters of model output."
    )
