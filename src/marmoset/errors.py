class MarmosetError(Exception):
    """Base class for all marmoset errors."""


class TaskAbortedError(MarmosetError):
    """Raised when presentation is attempted on an aborted turn."""

    def __init__(self, task_id: str):
        super().__init__(f"task {task_id} aborted")
        self.task_id = task_id


class ToolNotAllowedError(MarmosetError):
    """The mode policy refused a tool for the current mode."""

    def __init__(self, tool_name: str, mode: str):
        super().__init__(f'Tool "{tool_name}" is not allowed in {mode} mode.')
        self.tool_name = tool_name
        self.mode = mode


class ToolArgumentError(MarmosetError, ValueError):
    """A tool received a missing or invalid argument."""


class PartialJSONError(MarmosetError, ValueError):
    """The JSON prefix is malformed, not merely incomplete."""


class LLMRecoverableError(MarmosetError):
    """Raised by a tool body to hand a message back to the model.

    The message is delivered as a regular tool result rather than an
    error, so the model can correct its next call.
    """


class FileRestrictionError(ToolNotAllowedError):
    """The mode allows the tool but not on this file."""

    def __init__(self, tool_name: str, mode: str, pattern: str, path: str, description: str | None = None):
        MarmosetError.__init__(
            self,
            f"This mode ({mode}) can only edit files matching pattern: {pattern}"
            f"{f' ({description})' if description else ''}. Got: {path}",
        )
        self.tool_name = tool_name
        self.mode = mode
        self.pattern = pattern
        self.path = path
