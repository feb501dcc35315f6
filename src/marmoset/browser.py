"""Long-lived browser session kept open across tool calls.

Whether a session is still in use is decided from the chat history
rather than from local state: a session is active once any
``browser_action_result`` has been recorded and the most recent
``browser_action`` was not a ``close``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

BROWSER_ACTION = "browser_action"
BROWSER_ACTION_RESULT = "browser_action_result"


@dataclass
class ChatRecord:
    """One completed ``say`` recorded in the task's chat history."""

    kind: str
    text: str | None = None


class BrowserSession(Protocol):
    async def close_browser(self) -> None: ...


class NullBrowserSession:
    """Browser session stand-in for runtimes without a browser."""

    def __init__(self) -> None:
        self.close_count = 0

    async def close_browser(self) -> None:
        self.close_count += 1


def is_browser_session_active(history: Sequence[ChatRecord]) -> bool:
    has_started = any(record.kind == BROWSER_ACTION_RESULT for record in history)
    if not has_started:
        return False
    for record in reversed(history):
        if record.kind != BROWSER_ACTION:
            continue
        try:
            action = json.loads(record.text or "{}")
        except json.JSONDecodeError:
            return True
        return not (isinstance(action, dict) and action.get("action") == "close")
    return True
