"""Raw model output → JSON → typed record.

Two steps, deliberately separate:

  clean_json()  - total. Strips code fences and surrounding commentary,
                  returns the outermost JSON object/array substring, or
                  "{}" / "[]" when none can be found. Never raises.
  parse_json() / parse_model()
                - json.loads + pydantic validation. Any failure is a
                  MalformedResponseError; callers do not retry it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"```json\s*|```", re.IGNORECASE)
_CONTROL_RE = re.compile(r"[\x00-\x09\x0b-\x1f\x7f]")


class MalformedResponseError(ValueError):
    """Model output could not be parsed into the required structure."""


def clean_json(text: str | None) -> str:
    """Extract the JSON payload from noisy model output.

    An object wins when its `{` comes before any `[`. The payload runs from
    that opener to the last closer of the same kind. Control characters
    (except newline) are removed.
    """
    if not isinstance(text, str) or not text:
        return "{}"

    cleaned = _FENCE_RE.sub("", text).strip()
    first_brace = cleaned.find("{")
    first_bracket = cleaned.find("[")

    if first_brace != -1 and (first_bracket == -1 or first_brace < first_bracket):
        start, end, empty = first_brace, cleaned.rfind("}"), "{}"
    elif first_bracket != -1:
        start, end, empty = first_bracket, cleaned.rfind("]"), "[]"
    else:
        return "{}"

    if end < start:
        return empty

    payload = _CONTROL_RE.sub("", cleaned[start:end + 1]).strip()
    return payload or empty


def parse_json(text: str | None) -> Any:
    """Clean and decode model output. Raises MalformedResponseError."""
    cleaned = clean_json(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Model output is not valid JSON: %s", e)
        raise MalformedResponseError(f"Model returned invalid JSON: {e}") from e


def parse_model(text: str | None, model: type[M]) -> M:
    """Clean, decode and validate model output into `model`."""
    data = parse_json(text)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(
            f"Model output does not match {model.__name__}: {e.error_count()} error(s)"
        ) from e
