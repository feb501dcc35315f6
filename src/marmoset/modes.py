"""Operating modes and the tools each one may use.

A mode grants tool *groups*. Some tools are always available no matter
the mode. A group may carry a file restriction, in which case edit tools
are only allowed on paths matching its pattern.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from marmoset.errors import FileRestrictionError, ToolNotAllowedError

logger = logging.getLogger(__name__)

TOOL_GROUPS: dict[str, tuple[str, ...]] = {
    "read": (
        "read_file",
        "fetch_instructions",
        "search_files",
        "list_files",
        "list_code_definition_names",
        "codebase_search",
    ),
    "edit": (
        "apply_diff",
        "write_to_file",
        "insert_content",
        "search_and_replace",
        "apply_patch",
        "generate_image",
    ),
    "browser": ("browser_action",),
    "command": ("execute_command",),
    "mcp": ("use_mcp_tool", "access_mcp_resource"),
    "modes": ("switch_mode", "new_task"),
}

ALWAYS_AVAILABLE_TOOLS = (
    "ask_followup_question",
    "attempt_completion",
    "switch_mode",
    "new_task",
    "update_todo_list",
    "run_slash_command",
)


@dataclass(frozen=True)
class GroupOptions:
    file_regex: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ModeConfig:
    slug: str
    name: str
    groups: Mapping[str, GroupOptions | None] = field(default_factory=dict)
    # Host-registered tools the mode may use on top of its groups.
    extra_tools: tuple[str, ...] = ()


DEFAULT_MODES: tuple[ModeConfig, ...] = (
    ModeConfig(
        slug="architect",
        name="Architect",
        groups={
            "read": None,
            "edit": GroupOptions(file_regex=r"\.md$", description="Markdown files only"),
            "browser": None,
            "mcp": None,
        },
    ),
    ModeConfig(
        slug="code",
        name="Code",
        groups={"read": None, "edit": None, "browser": None, "command": None, "mcp": None},
    ),
    ModeConfig(slug="ask", name="Ask", groups={"read": None, "browser": None, "mcp": None}),
    ModeConfig(
        slug="debug",
        name="Debug",
        groups={"read": None, "edit": None, "browser": None, "command": None, "mcp": None},
    ),
    ModeConfig(slug="orchestrator", name="Orchestrator", groups={}),
)


class ModePolicy(Protocol):
    """Decides whether a tool may run in a mode."""

    def is_tool_allowed(self, tool_name: str, mode: str, params: Mapping[str, str] | None = None) -> bool: ...


class GroupModePolicy:
    """Mode policy backed by :class:`ModeConfig` tool groups.

    Tools in the ``extra_tools`` of a mode, or in ``always_allowed``,
    skip the group check. Unknown modes fall back to ``default_mode``.
    """

    def __init__(
        self,
        modes: tuple[ModeConfig, ...] = DEFAULT_MODES,
        always_allowed: tuple[str, ...] = (),
        default_mode: str = "code",
    ):
        self.modes = {m.slug: m for m in modes}
        self.always_allowed = frozenset((*ALWAYS_AVAILABLE_TOOLS, *always_allowed))
        self.default_mode = default_mode

    def get_mode(self, slug: str) -> ModeConfig:
        mode = self.modes.get(slug)
        if mode is None:
            logger.warning(f"Unknown mode {slug!r}, using {self.default_mode!r}")
            mode = self.modes[self.default_mode]
        return mode

    def is_tool_allowed(self, tool_name, mode, params=None):
        if tool_name in self.always_allowed:
            return True
        config = self.get_mode(mode)
        if tool_name in config.extra_tools:
            return True
        for group, options in config.groups.items():
            if tool_name not in TOOL_GROUPS.get(group, ()):
                continue
            if options is None or options.file_regex is None:
                return True
            path = (params or {}).get("path")
            if group == "edit" and path and not re.search(options.file_regex, path):
                raise FileRestrictionError(
                    tool_name, config.name, options.file_regex, path, options.description,
                )
            return True
        return False


def validate_tool_use(
    tool_name: str,
    mode: str,
    policy: ModePolicy,
    params: Mapping[str, str] | None = None,
) -> None:
    """Raise :class:`ToolNotAllowedError` if *tool_name* may not run in *mode*."""
    if not policy.is_tool_allowed(tool_name, mode, params):
        raise ToolNotAllowedError(tool_name, mode)
