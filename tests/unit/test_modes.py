import pytest

from marmoset.errors import FileRestrictionError, ToolNotAllowedError
from marmoset.modes import GroupModePolicy, ModeConfig, validate_tool_use


class TestGroupModePolicy:
    def test_code_mode_allows_edit_and_command(self):
        policy = GroupModePolicy()
        assert policy.is_tool_allowed("write_to_file", "code", {"path": "a.py"})
        assert policy.is_tool_allowed("execute_command", "code")

    def test_ask_mode_is_read_only(self):
        policy = GroupModePolicy()
        assert policy.is_tool_allowed("read_file", "ask")
        assert not policy.is_tool_allowed("write_to_file", "ask")
        assert not policy.is_tool_allowed("execute_command", "ask")

    def test_always_available_tools(self):
        policy = GroupModePolicy()
        assert policy.is_tool_allowed("attempt_completion", "orchestrator")
        assert not policy.is_tool_allowed("read_file", "orchestrator")

    def test_host_tools_always_allowed(self):
        policy = GroupModePolicy(always_allowed=("greet",))
        assert policy.is_tool_allowed("greet", "orchestrator")

    def test_mode_extra_tools(self):
        modes = (ModeConfig(slug="tiny", name="Tiny", extra_tools=("greet",)),)
        policy = GroupModePolicy(modes=modes, default_mode="tiny")
        assert policy.is_tool_allowed("greet", "tiny")
        assert not policy.is_tool_allowed("read_file", "tiny")

    def test_file_restriction(self):
        policy = GroupModePolicy()
        assert policy.is_tool_allowed("write_to_file", "architect", {"path": "docs/plan.md"})
        with pytest.raises(FileRestrictionError) as exc_info:
            policy.is_tool_allowed("write_to_file", "architect", {"path": "src/app.py"})
        assert exc_info.value.path == "src/app.py"
        assert "Markdown files only" in str(exc_info.value)

    def test_file_restriction_without_path_allowed(self):
        # The path may not have streamed in yet.
        assert GroupModePolicy().is_tool_allowed("write_to_file", "architect", {})

    def test_unknown_mode_falls_back(self, caplog):
        policy = GroupModePolicy()
        assert policy.is_tool_allowed("execute_command", "wizard")
        assert "Unknown mode 'wizard'" in caplog.text


class TestValidateToolUse:
    def test_denial_raises(self):
        with pytest.raises(ToolNotAllowedError) as exc_info:
            validate_tool_use("execute_command", "ask", GroupModePolicy())
        assert str(exc_info.value) == 'Tool "execute_command" is not allowed in ask mode.'

    def test_file_restriction_is_a_denial(self):
        with pytest.raises(ToolNotAllowedError):
            validate_tool_use("apply_diff", "architect", GroupModePolicy(), {"path": "main.py"})

    def test_allowed_returns_none(self):
        assert validate_tool_use("read_file", "code", GroupModePolicy()) is None
