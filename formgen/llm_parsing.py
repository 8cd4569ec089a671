from __future__ import annotations

import json
import re
from typing import Any, List, Optional

SNIPPET_CHARS = 200

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z0-9_-]*[ \t]*\r?\n?")
_FENCE_CLOSE_RE = re.compile(r"\r?\n?```\s*$")
_ARRAY_OF_OBJECTS_RE = re.compile(r"\[\s*\{")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_WRAPPER_KEYS = ("fields", "questions")


class ExtractError(ValueError):
    """Raised when no usable JSON array can be pulled out of model text."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.snippet = (raw_text or "")[:SNIPPET_CHARS]


class NoJsonFound(ExtractError):
    def __init__(self, raw_text: str = "") -> None:
        super().__init__("No JSON array found in model output", raw_text)


class MalformedJson(ExtractError):
    def __init__(self, parser_message: str, raw_text: str = "") -> None:
        super().__init__(f"Malformed JSON in model output: {parser_message}", raw_text)
        self.parser_message = parser_message


def _strip_fences(text: str) -> str:
    t = text.strip()
    t = _FENCE_OPEN_RE.sub("", t, count=1)
    t = _FENCE_CLOSE_RE.sub("", t, count=1)
    return t.strip()


def _balanced_array_slice(s: str, start: int) -> Optional[str]:
    """Return s[start:] up to the bracket closing s[start], string-aware."""
    in_str = False
    esc = False
    depth = 0
    for i in range(start, len(s)):
        ch = s[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return s[start : i + 1]
    return None


def _sanitize(candidate: str) -> str:
    s = _TRAILING_COMMA_RE.sub(r"\1", candidate)
    return s.replace("“", '"').replace("”", '"').replace("’", "'")


def _loads_lenient(candidate: str, raw_text: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as first:
        repaired = _sanitize(candidate)
        if repaired != candidate:
            try:
                return json.loads(repaired)
            except json.JSONDecodeError:
                pass
        raise MalformedJson(str(first), raw_text) from first


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        for key in _WRAPPER_KEYS:
            inner = value.get(key)
            if isinstance(inner, list):
                return inner
    return value


def extract_json(raw_text: str) -> List[Any]:
    """Pull the JSON array of field objects out of free-form model text.

    Strategy:
    - Strip a leading ```json / ``` fence and the trailing ``` if present.
    - If what remains is already a JSON array, use it.
    - Otherwise take each `[` that opens a run of `{...}` objects through its
      matching `]` (bracket-aware, ignoring brackets inside strings) and use
      the first one that parses.
    - Otherwise parse the whole trimmed text; an object wrapping the array
      under "fields"/"questions" is unwrapped.

    Raises NoJsonFound when nothing array-like exists and MalformedJson (from
    the first candidate) when no candidate parses, even after one
    trailing-comma/smart-quote repair pass.
    """
    text = raw_text if isinstance(raw_text, str) else ""
    body = _strip_fences(text)
    if not body:
        raise NoJsonFound(text)

    if body.startswith("["):
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return parsed

    # Prose may echo the requested shape as a pseudo-array before the real one
    first_error: Optional[MalformedJson] = None
    for m in _ARRAY_OF_OBJECTS_RE.finditer(body):
        candidate = _balanced_array_slice(body, m.start())
        if candidate is None:
            # Opened but never closed: usually a reply cut off at the token ceiling
            first_error = first_error or MalformedJson("unterminated JSON array", text)
            continue
        try:
            parsed = _unwrap(_loads_lenient(candidate, text))
        except MalformedJson as exc:
            first_error = first_error or exc
            continue
        if isinstance(parsed, list):
            return parsed
    if first_error is not None:
        raise first_error

    if not body.startswith(("[", "{")):
        raise NoJsonFound(text)
    parsed = _unwrap(_loads_lenient(body, text))
    if isinstance(parsed, list):
        return parsed
    raise NoJsonFound(text)
