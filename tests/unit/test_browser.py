import json

import pytest

from marmoset.browser import ChatRecord, NullBrowserSession, is_browser_session_active


def action(name):
    return ChatRecord(kind="browser_action", text=json.dumps({"action": name}))


RESULT = ChatRecord(kind="browser_action_result", text="{}")


class TestIsBrowserSessionActive:
    def test_empty_history(self):
        assert not is_browser_session_active([])

    def test_launch_without_result_is_inactive(self):
        assert not is_browser_session_active([action("launch")])

    def test_active_after_result(self):
        assert is_browser_session_active([action("launch"), RESULT, action("click")])

    def test_inactive_after_close(self):
        assert not is_browser_session_active([action("launch"), RESULT, action("close")])

    def test_relaunch_after_close(self):
        history = [action("launch"), RESULT, action("close"), action("launch")]
        assert is_browser_session_active(history)

    def test_unparseable_action_counts_as_active(self):
        history = [RESULT, ChatRecord(kind="browser_action", text="not json")]
        assert is_browser_session_active(history)


@pytest.mark.asyncio
async def test_null_session_counts_closes():
    session = NullBrowserSession()
    await session.close_browser()
    await session.close_browser()
    assert session.close_count == 2
