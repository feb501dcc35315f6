"""Content blocks produced by the assistant stream.

The stream is turned into an ordered list of blocks. Each block is one
of :class:`TextBlock`, :class:`ToolUse` or :class:`NestedToolUse`; the
dispatcher matches on the concrete type.

A tool block's calling convention is carried by :attr:`ToolUse.protocol`:
native calls always have an ``id`` and must receive exactly one
``tool_result`` keyed by it, legacy XML calls never have one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class ToolProtocol(str, Enum):
    XML = "xml"
    NATIVE = "native"


@dataclass
class TextBlock:
    text: str = ""
    partial: bool = False


@dataclass
class ToolUse:
    """A tool call, either streaming (``partial``) or complete.

    ``params`` holds stringified legacy parameters and is always
    populated. ``native_args`` is only set once the arguments for a
    known tool can be projected into its typed shape.
    """

    name: str
    params: dict[str, str] = field(default_factory=dict)
    native_args: dict[str, Any] | None = None
    partial: bool = False
    id: str | None = None
    raw_arguments: str | None = None
    parse_error: str | None = None

    @property
    def protocol(self) -> ToolProtocol:
        return ToolProtocol.NATIVE if self.id else ToolProtocol.XML


@dataclass
class NestedToolUse:
    """A dynamically named tool wrapping a remote server capability.

    Executed through the generic ``use_mcp_tool`` path but keeps its
    original ``name`` (e.g. ``mcp_github_create_issue``) for history.
    """

    id: str
    name: str
    server_name: str = ""
    tool_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    partial: bool = False
    raw_arguments: str | None = None

    @property
    def protocol(self) -> ToolProtocol:
        return ToolProtocol.NATIVE

    def as_tool_use(self) -> ToolUse:
        """Return the equivalent ``use_mcp_tool`` call."""
        return ToolUse(
            id=self.id,
            name="use_mcp_tool",
            params={
                "server_name": self.server_name,
                "tool_name": self.tool_name,
                "arguments": json.dumps(self.arguments),
            },
            native_args={
                "server_name": self.server_name,
                "tool_name": self.tool_name,
                "arguments": self.arguments,
            },
            partial=self.partial,
            raw_arguments=self.raw_arguments,
        )


ContentBlock = Union[TextBlock, ToolUse, NestedToolUse]
