"""Best-effort decoding of truncated JSON documents.

Tool-call arguments are streamed a few characters at a time, so the
accumulated text is usually an unfinished JSON object. :func:`parse_partial_json`
returns the value formed by everything that is already structurally
complete. Open objects and arrays are closed, an unterminated string
(key or value) is left out, and a trailing number is left out because
more digits may still arrive.

Parsing is delegated to ``pydantic_core.from_json`` in partial mode.
``NaN`` and ``Infinity`` are rejected on both paths; they are not JSON.
"""

import re
from typing import Any

from pydantic_core import from_json

from marmoset.errors import PartialJSONError

# A number that ends the buffer right after ``[``, ``,`` or ``:`` may be
# cut mid-token ("12" of "120"), so it is dropped until it is delimited.
_TRAILING_NUMBER_RE = re.compile(
    r"(?<=[\[,:])\s*-?\d*(?:\.\d*)?(?:[eE][+-]?\d*)?$"
)
_TRAILING_LITERAL_RE = re.compile(r"(?<=[\[,:])\s*(?:t|tr|tru|f|fa|fal|fals|n|nu|nul)$")


def parse_partial_json(text: str) -> Any:
    """Decode the structurally complete part of *text*.

    Returns ``None`` for blank input.

    Raises:
        PartialJSONError: If the prefix can never become valid JSON.
    """
    if not text or not text.strip():
        return None
    candidate = _TRAILING_NUMBER_RE.sub("", text.rstrip())
    candidate = _TRAILING_LITERAL_RE.sub("", candidate)
    try:
        return from_json(candidate, allow_inf_nan=False, allow_partial=True)
    except ValueError as e:
        raise PartialJSONError(str(e)) from e


def parse_json(text: str) -> Any:
    """Strictly decode a complete JSON document.

    Raises:
        PartialJSONError: If *text* is not a complete, valid document.
    """
    try:
        return from_json(text, allow_inf_nan=False)
    except ValueError as e:
        raise PartialJSONError(str(e)) from e
