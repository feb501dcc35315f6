"""Streaming events emitted while a task runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class RawResponseEvent(StreamEvent):
    """Text delta from the provider stream."""

    content: str = ""


@dataclass
class RunItemEvent(StreamEvent):
    """A discrete step in the task loop.

    ``name`` values: ``"tool_call"``, ``"tool_result"``, ``"message"``,
    ``"mistake_limit"``.
    """

    name: str = ""
    data: dict = field(default_factory=dict)


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event, always the last one yielded."""

    result: Any = None
