"""Presentation and approval collaborator.

The engine never renders anything itself. It hands text to a
:class:`Presenter` with ``say`` and asks for decisions with ``ask``.
Front-ends (a chat UI, a CLI, a test double) implement both.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class AskResponse(Enum):
    YES = "yesButtonClicked"
    NO = "noButtonClicked"
    MESSAGE = "messageResponse"


@dataclass
class AskResult:
    response: AskResponse
    text: str | None = None
    images: list[str] = field(default_factory=list)


@dataclass
class ApprovalResult:
    """Outcome of asking the user to approve one tool call."""

    approved: bool
    feedback_text: str | None = None
    feedback_images: list[str] = field(default_factory=list)


@dataclass
class ToolProgressStatus:
    icon: str | None = None
    text: str | None = None


class Presenter(ABC):
    """Receives text to display and answers approval questions."""

    @abstractmethod
    async def ask(
        self,
        kind: str,
        text: str | None = None,
        partial: bool = False,
        progress_status: ToolProgressStatus | None = None,
        is_protected: bool = False,
    ) -> AskResult:
        """Ask the user something and wait for the answer.

        Partial asks only update a pending question and are answered
        with ``AskResponse.YES`` immediately.
        """

    @abstractmethod
    async def say(
        self,
        kind: str,
        text: str | None = None,
        images: list[str] | None = None,
        partial: bool = False,
    ) -> None:
        ...


class AutoApprovePresenter(Presenter):
    """Headless presenter that approves everything and logs output."""

    async def ask(self, kind, text=None, partial=False, progress_status=None, is_protected=False):
        if not partial:
            logger.info(f"Auto-approving {kind}: {text}")
        return AskResult(response=AskResponse.YES)

    async def say(self, kind, text=None, images=None, partial=False):
        if not partial:
            logger.info(f"[{kind}] {text}")
