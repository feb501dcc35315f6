"""Reconstruction of native tool calls from streamed argument text.

A :class:`ToolCallParser` belongs to exactly one in-flight model request.
It owns the per-call accumulated argument text and the per-index raw
fragment tracking, and must be cleared (:meth:`ToolCallParser.clear_all`)
before every new request so no call id or index leaks across turns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from marmoset.blocks import NestedToolUse, ToolUse
from marmoset.errors import PartialJSONError
from marmoset.partial_json import parse_json, parse_partial_json
from marmoset.streaming import RawChunkTracker, ToolCallEvent, ToolCallFragment
from marmoset.tool_args import (
    MCP_TOOL_PREFIX,
    TOOL_ARGS,
    TOOL_PARAM_NAMES,
    ToolArgsSpec,
    is_known_tool,
    is_nested_tool_name,
    legacy_params,
)

logger = logging.getLogger(__name__)


@dataclass
class StreamingCallState:
    id: str
    name: str
    arguments: str = ""


class ToolCallParser:
    """Accumulates and decodes native tool calls for one model request.

    Args:
        extra_specs: Argument shapes of tools registered by the host on
            top of the built-in tool set. They are treated as known tools
            and their fields are kept as legacy parameters.
    """

    def __init__(self, extra_specs: Iterable[ToolArgsSpec] = ()) -> None:
        self._calls: dict[str, StreamingCallState] = {}
        self._raw = RawChunkTracker()
        extra = {s.name: s for s in extra_specs}
        self._specs: dict[str, ToolArgsSpec] = {**TOOL_ARGS, **extra}
        self._param_names = TOOL_PARAM_NAMES.union(
            *(s.fields for name, s in extra.items() if name not in TOOL_ARGS)
        )

    # ------------------------------------------------------------------
    # Raw provider fragments
    # ------------------------------------------------------------------

    def process_raw_chunk(self, fragment: ToolCallFragment) -> list[ToolCallEvent]:
        return self._raw.process(fragment)

    def process_call_end(self, index: int) -> list[ToolCallEvent]:
        return self._raw.process_call_end(index)

    def process_finish_signal(self, finish_reason: str | None) -> list[ToolCallEvent]:
        return self._raw.process_finish_signal(finish_reason)

    def finalize_remaining(self) -> list[ToolCallEvent]:
        return self._raw.finalize_remaining()

    def clear_all(self) -> None:
        """Forget every tracked call id and fragment index."""
        self._calls.clear()
        self._raw.clear()

    # ------------------------------------------------------------------
    # Per-call accumulation
    # ------------------------------------------------------------------

    def start_call(self, call_id: str, name: str) -> None:
        if call_id in self._calls:
            logger.debug(f"Restarting streaming tool call {call_id} as {name}")
        self._calls[call_id] = StreamingCallState(id=call_id, name=name)

    def has_call(self, call_id: str) -> bool:
        return call_id in self._calls

    def is_known_tool(self, name: str) -> bool:
        """True for built-in tools, host tools and nested dynamic names."""
        return is_nested_tool_name(name) or is_known_tool(name) or name in self._specs

    def raw_arguments(self, call_id: str) -> str | None:
        state = self._calls.get(call_id)
        return state.arguments if state is not None else None

    def append_chunk(self, call_id: str, text: str) -> ToolUse | None:
        """Append *text* to a call and return its current partial form.

        Returns ``None`` when the call id is unknown, when the call is a
        nested dynamic tool (no streaming progress), or when the
        accumulated text cannot be decoded yet.
        """
        state = self._calls.get(call_id)
        if state is None:
            logger.warning(f"Received argument chunk for unknown tool call {call_id}")
            return None
        state.arguments += text

        if is_nested_tool_name(state.name):
            return None
        try:
            args = parse_partial_json(state.arguments)
        except PartialJSONError:
            return None
        if not isinstance(args, dict):
            return None

        native_args = None
        spec = self._specs.get(state.name)
        if spec is not None:
            native_args = spec.project(args) or None
        return ToolUse(
            id=call_id,
            name=state.name,
            params=legacy_params(args, self._param_names),
            native_args=native_args,
            partial=True,
        )

    def finalize_call(self, call_id: str) -> ToolUse | NestedToolUse | None:
        """Strictly decode a completed call and forget its state.

        Returns ``None`` (after logging) for unknown ids and invalid JSON.
        """
        state = self._calls.pop(call_id, None)
        if state is None:
            logger.warning(f"Cannot finalize unknown tool call {call_id}")
            return None
        return self.parse_tool_call(call_id, state.name, state.arguments)

    def parse_tool_call(
        self, call_id: str, name: str, arguments: str
    ) -> ToolUse | NestedToolUse | None:
        """Decode a complete native tool call."""
        if is_nested_tool_name(name):
            return self._parse_nested_tool(call_id, name, arguments)
        if not self.is_known_tool(name):
            logger.error(f"Invalid tool name: {name}")
            return None

        try:
            args = parse_json(arguments) if arguments.strip() else {}
        except PartialJSONError as e:
            logger.error(f"Failed to parse arguments for tool call {call_id} ({name}): {e}")
            return None
        if not isinstance(args, dict):
            logger.error(f"Arguments for tool call {call_id} ({name}) are not a JSON object")
            return None

        for key in args:
            if key not in self._param_names:
                logger.warning(f"Unknown parameter '{key}' for tool '{name}'")

        native_args = None
        spec = self._specs.get(name)
        if spec is not None:
            projected = spec.project(args)
            if spec.is_complete(projected):
                native_args = projected
        return ToolUse(
            id=call_id,
            name=name,
            params=legacy_params(args, self._param_names),
            native_args=native_args,
            partial=False,
            raw_arguments=arguments,
        )

    def _parse_nested_tool(
        self, call_id: str, name: str, arguments: str
    ) -> NestedToolUse | None:
        try:
            args = parse_json(arguments) if arguments.strip() else {}
        except PartialJSONError as e:
            logger.error(f"Failed to parse dynamic tool {name}: {e}")
            return None
        if not isinstance(args, dict):
            logger.error(f"Arguments for dynamic tool {name} are not a JSON object")
            return None

        server_name, tool_name = _split_nested_name(name)
        tool_arguments: Any = args
        if args.get("server_name") and args.get("tool_name"):
            server_name = args["server_name"]
            tool_name = args["tool_name"]
            tool_arguments = args.get("toolInputProps", {
                k: v for k, v in args.items() if k not in ("server_name", "tool_name")
            })
        if not server_name or not tool_name:
            logger.error(f"Missing server or tool name in dynamic tool {name}")
            return None

        return NestedToolUse(
            id=call_id,
            name=name,
            server_name=server_name,
            tool_name=tool_name,
            arguments=tool_arguments if isinstance(tool_arguments, dict) else {},
            partial=False,
            raw_arguments=arguments,
        )


def _split_nested_name(name: str) -> tuple[str, str]:
    """Split ``mcp_<server>_<tool>`` on the first underscore after the prefix."""
    server_name, _, tool_name = name[len(MCP_TOOL_PREFIX):].partition("_")
    return server_name, tool_name
