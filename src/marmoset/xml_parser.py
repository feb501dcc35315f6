"""Incremental parser for the legacy XML tool-calling convention.

In the legacy convention the model writes tool calls inline::

    Let me look at the file.
    <read_file>
    <path>src/app.py</path>
    </read_file>

The accumulated message is re-parsed on every chunk; the returned block
list always describes the whole message so far, with the trailing block
marked ``partial`` while it is still being streamed. Legacy tool blocks
never carry an ``id``.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from marmoset.blocks import ContentBlock, TextBlock, ToolUse
from marmoset.tool_args import TOOL_NAMES, TOOL_PARAM_NAMES

logger = logging.getLogger(__name__)

# Values of these parameters may legitimately contain their own closing
# tag (file contents), so the last occurrence wins.
_GREEDY_PARAMS = frozenset(("content",))


def _tag_pattern(names: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(n) for n in sorted(names, key=len, reverse=True))
    return re.compile(rf"<({alternatives})>")


def parse_assistant_message(
    text: str,
    tool_names: Iterable[str] = TOOL_NAMES,
    param_names: Iterable[str] = TOOL_PARAM_NAMES,
) -> list[ContentBlock]:
    """Split *text* into text and tool blocks.

    The final block is ``partial`` when *text* ends inside it.
    """
    tool_open = _tag_pattern(tool_names)
    param_open = _tag_pattern(param_names)
    blocks: list[ContentBlock] = []
    pos = 0
    while pos < len(text):
        match = tool_open.search(text, pos)
        if match is None:
            rest = text[pos:].strip()
            if rest:
                blocks.append(TextBlock(text=rest, partial=True))
            break

        before = text[pos:match.start()].strip()
        if before:
            blocks.append(TextBlock(text=before, partial=False))

        tool, pos = _parse_tool(text, match.group(1), match.end(), param_open)
        blocks.append(tool)
        if tool.partial:
            break
    return blocks


def _parse_tool(text: str, name: str, pos: int, param_open: re.Pattern) -> tuple[ToolUse, int]:
    tool = ToolUse(name=name, partial=True)
    closing = f"</{name}>"
    while True:
        close_at = text.find(closing, pos)
        param = param_open.search(text, pos)
        if param is not None and (close_at == -1 or param.start() < close_at):
            param_name = param.group(1)
            value_start = param.end()
            param_closing = f"</{param_name}>"
            if param_name in _GREEDY_PARAMS:
                value_end = text.rfind(param_closing, value_start)
            else:
                value_end = text.find(param_closing, value_start)
            if value_end == -1:
                tool.params[param_name] = text[value_start:].strip()
                return tool, len(text)
            tool.params[param_name] = text[value_start:value_end].strip()
            pos = value_end + len(param_closing)
            continue
        if close_at == -1:
            return tool, len(text)
        tool.partial = False
        return tool, close_at + len(closing)


class AssistantMessageParser:
    """Stateful wrapper that accumulates streamed text.

    Args:
        extra_tool_names: Host-registered tool names recognised as tags
            in addition to the built-in tools.
        extra_param_names: Parameter names of those tools.
    """

    def __init__(
        self,
        extra_tool_names: Iterable[str] = (),
        extra_param_names: Iterable[str] = (),
    ):
        self.tool_names = frozenset((*TOOL_NAMES, *extra_tool_names))
        self.param_names = frozenset((*TOOL_PARAM_NAMES, *extra_param_names))
        self._buffer = ""
        self._blocks: list[ContentBlock] = []

    def reset(self) -> None:
        self._buffer = ""
        self._blocks = []

    def process_chunk(self, chunk: str) -> list[ContentBlock]:
        self._buffer += chunk
        self._blocks = parse_assistant_message(self._buffer, self.tool_names, self.param_names)
        return self._blocks

    def finalize_content_blocks(self) -> list[ContentBlock]:
        """Mark every block complete once the stream has ended."""
        for block in self._blocks:
            if block.partial:
                if isinstance(block, ToolUse):
                    logger.debug(f"Stream ended inside <{block.name}>, closing it")
                block.partial = False
        return self._blocks
