import json
import logging
from dataclasses import dataclass

from marmoset.blocks import ToolUse

logger = logging.getLogger(__name__)

_EXEMPT_BROWSER_ACTIONS = ("scroll_down", "scroll_up")


@dataclass
class RepetitionCheck:
    allow_execution: bool
    message_key: str | None = None
    message_detail: str | None = None


class ToolRepetitionDetector:
    """Blocks a tool call repeated identically too many times in a row.

    The count includes the current call, so with ``limit=3`` the third
    identical call in a row is refused.
    A new signature starts counting at 1; see "Repetition counting" in DESIGN.md.

    Args:
        limit: Number of consecutive identical calls that triggers a
            block. ``0`` disables detection.
    """

    def __init__(self, limit: int = 3):
        self.limit = limit
        self._previous_signature: str | None = None
        self._consecutive_count = 0

    def check(self, call: ToolUse) -> RepetitionCheck:
        if _is_browser_scroll(call):
            return RepetitionCheck(allow_execution=True)

        signature = _signature(call)
        if signature == self._previous_signature:
            self._consecutive_count += 1
        else:
            self._consecutive_count = 1
            self._previous_signature = signature

        if self.limit > 0 and self._consecutive_count >= self.limit:
            # Start over so the next attempt, once guided, gets a fresh count.
            self._consecutive_count = 0
            self._previous_signature = None
            logger.info(f"Tool repetition limit reached for {call.name}")
            return RepetitionCheck(
                allow_execution=False,
                message_key="mistake_limit_reached",
                message_detail=(
                    f"Marmoset appears to be stuck in a loop, attempting the same "
                    f"action ({call.name}) repeatedly. This might indicate a problem "
                    f"with its current strategy. Consider rephrasing the task, "
                    f"providing more specific instructions, or guiding it toward a "
                    f"different approach."
                ),
            )
        return RepetitionCheck(allow_execution=True)


def _is_browser_scroll(call: ToolUse) -> bool:
    return call.name == "browser_action" and call.params.get("action") in _EXEMPT_BROWSER_ACTIONS


def _signature(call: ToolUse) -> str:
    payload: dict = {"name": call.name, "params": call.params}
    if call.native_args:
        payload["nativeArgs"] = call.native_args
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))
