from pydantic import BaseModel, Field

from marmoset.provider import ModelProvider
from marmoset.tools import BaseTool


class Agent(BaseModel):
    """A model, its provider, a system prompt and the tools it may call.

    Tools are looked up by name when the dispatcher runs a call, so a
    tool's ``name`` must match the name the model uses.

    Args:
        name: Agent name, used in logs and spans.
        system_prompt: Injected as the first message of every request.
        tools: Tool implementations available to this agent.
        model: Model identifier passed to the provider.
        provider: Streaming model provider.
        description: Free-form description.
    """

    model_config = {"arbitrary_types_allowed": True}

    name: str
    system_prompt: str
    tools: list[BaseTool] = Field(default_factory=list)
    model: str
    provider: ModelProvider
    description: str = ""

    @property
    def tool_registry(self) -> dict[str, BaseTool]:
        return {t.name: t for t in self.tools}
