from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marmoset.agent import Agent
    from marmoset.session import Session
    from marmoset.task import Task


@dataclass
class Context:
    """Runtime context injected into tools that declare a ``context`` parameter.

    Args:
        session: The active session containing the conversation transcript.
        task: The task whose assistant message is being dispatched.
        agent: The agent currently being executed by the Runner.
    """

    session: Session
    task: Task
    agent: Agent
