"""Pull a JSON verdict out of free-form model text.

Models wrap JSON in markdown fences or surround it with prose. The scanner
walks the text once, tracking string and escape state, and yields every
balanced ``{...}`` or ``[...]`` span in order of appearance. The first span
that strictly parses into the expected shape wins. Nothing here touches the
network so it can be exercised against adversarial text directly.
"""

from __future__ import annotations

from typing import Any, Iterator
import json


_OPENERS = {"{": "}", "[": "]"}
_SHAPES = {"object": dict, "array": list}


class EvaluationParseError(ValueError):
    def __init__(self, message: str, *, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


def iter_balanced_spans(text: str) -> Iterator[str]:
    candidate = str(text or "")
    idx = 0
    length = len(candidate)
    while idx < length:
        char = candidate[idx]
        if char not in _OPENERS:
            idx += 1
            continue
        end = _match_span(candidate, idx)
        if end is None:
            idx += 1
            continue
        yield candidate[idx : end + 1]
        idx = end + 1


def _match_span(text: str, start: int) -> int | None:
    stack = [_OPENERS[text[start]]]
    in_string = False
    escape = False
    for idx in range(start + 1, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in ("}", "]"):
            if char != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return idx
    return None


def extract_json_span(text: str) -> str:
    """Return the first balanced JSON-looking span in ``text``."""
    if not str(text or "").strip():
        raise EvaluationParseError("Empty model response", error_code="empty_response")
    for span in iter_balanced_spans(text):
        return span
    raise EvaluationParseError("No balanced JSON span in model response", error_code="no_json_span")


def parse_json_payload(text: str, *, expect: str = "object") -> Any:
    """Strictly parse the first balanced span of the expected shape.

    ``expect`` is ``"object"``, ``"array"`` or ``"any"``.
    """
    if not str(text or "").strip():
        raise EvaluationParseError("Empty model response", error_code="empty_response")

    wanted = _SHAPES.get(expect)
    saw_span = False
    saw_valid_json = False
    for span in iter_balanced_spans(text):
        saw_span = True
        try:
            parsed = json.loads(span)
        except ValueError:
            continue
        saw_valid_json = True
        if wanted is None or isinstance(parsed, wanted):
            return parsed

    if not saw_span:
        raise EvaluationParseError("No balanced JSON span in model response", error_code="no_json_span")
    if not saw_valid_json:
        raise EvaluationParseError("Model response span is not valid JSON", error_code="invalid_json")
    raise EvaluationParseError(
        f"Model response does not contain a JSON {expect}",
        error_code="unexpected_shape",
    )
