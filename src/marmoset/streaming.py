"""Streaming primitives for provider responses.

Providers yield :class:`StreamChunk` objects. Tool calls arrive as
:class:`ToolCallFragment` objects keyed by a positional ``index``; the
:class:`RawChunkTracker` turns them into per-call start / delta / end
events once each call's id and name are known.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

logger = logging.getLogger(__name__)


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any provider."""

    content_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None


@dataclass
class ToolCall:
    """A resolved tool call as recorded in the transcript."""

    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCallStart:
    id: str
    name: str


@dataclass
class ToolCallDelta:
    id: str
    fragment: str


@dataclass
class ToolCallEnd:
    id: str


ToolCallEvent = Union[ToolCallStart, ToolCallDelta, ToolCallEnd]


@dataclass
class _Track:
    id: str | None = None
    name: str | None = None
    started: bool = False
    buffered: list[str] = field(default_factory=list)


class RawChunkTracker:
    """Normalises positional fragments into per-call events.

    Some providers only send the call id or name after the first
    argument fragments, so fragments are tracked by ``index`` and any
    argument text that arrives before the call has started is buffered
    and replayed, in order, right after the start event.
    """

    def __init__(self) -> None:
        self._tracks: dict[int, _Track] = {}

    def process(self, fragment: ToolCallFragment) -> list[ToolCallEvent]:
        events: list[ToolCallEvent] = []
        track = self._tracks.setdefault(fragment.index, _Track())
        if fragment.call_id:
            track.id = fragment.call_id
        if fragment.name:
            track.name = fragment.name

        if not track.started and track.id and track.name:
            track.started = True
            events.append(ToolCallStart(id=track.id, name=track.name))
            for buffered in track.buffered:
                events.append(ToolCallDelta(id=track.id, fragment=buffered))
            track.buffered.clear()

        if fragment.arguments_delta:
            if track.started:
                events.append(ToolCallDelta(id=track.id, fragment=fragment.arguments_delta))
            else:
                track.buffered.append(fragment.arguments_delta)
        return events

    def process_call_end(self, index: int) -> list[ToolCallEvent]:
        """Close the call at *index* when the provider signals it explicitly."""
        track = self._tracks.pop(index, None)
        if track is None or not track.started:
            return []
        return [ToolCallEnd(id=track.id)]

    def process_finish_signal(self, finish_reason: str | None) -> list[ToolCallEvent]:
        """Close every open call when the provider reports a finish reason."""
        if not finish_reason:
            return []
        logger.debug(f"Finish signal {finish_reason!r}, closing {len(self._tracks)} tracked call(s)")
        return self.finalize_remaining()

    def finalize_remaining(self) -> list[ToolCallEvent]:
        """Close calls that never received an end; used at stream end."""
        events: list[ToolCallEvent] = []
        for index in sorted(self._tracks):
            track = self._tracks[index]
            if track.started:
                events.append(ToolCallEnd(id=track.id))
            elif track.buffered:
                logger.warning(f"Dropping tool call fragments at index {index}: no id or name received")
        self._tracks.clear()
        return events

    def clear(self) -> None:
        self._tracks.clear()

    def __len__(self) -> int:
        return len(self._tracks)
