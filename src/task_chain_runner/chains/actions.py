"""Step actions: what a chain step actually does when it executes.

Each action is selected by its tag (``ChainStep.action``).  Actions receive
the step's mapped input and return the data to merge into the chain.  The
``prompt`` action renders the step prompt against the input and asks a
reasoning provider to run it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from string import Template
from typing import Any, Optional, Union

from ..providers import ProviderRegistry, ProviderResponse


# ---------------------------------------------------------------------------
# Step I/O
# ---------------------------------------------------------------------------

@dataclass
class StepInput:
    """Everything an action needs to execute."""
    chain_id: str
    step_index: int
    step_name: str
    task_id: str
    prompt: str
    data: dict[str, Any]
    options: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass
class StepOutput:
    data: dict[str, Any] = field(default_factory=dict)
    content: str = ""
    response: Optional[ProviderResponse] = None

    @property
    def needs_current_execution(self) -> bool:
        return self.response is not None and self.response.needs_current_execution


# ---------------------------------------------------------------------------
# Base action
# ---------------------------------------------------------------------------

class StepAction(ABC):
    """Abstract base for step action implementations."""

    @property
    @abstractmethod
    def tag(self) -> str:
        """Unique action tag (matches ``ChainStep.action``)."""
        ...

    @abstractmethod
    async def invoke(self, step_input: StepInput, providers: ProviderRegistry) -> StepOutput:
        """Run the action.  Raising marks the attempt as failed."""
        ...


def render_prompt(template: str, data: dict[str, Any]) -> str:
    """Substitute ``$key`` / ``${key}`` placeholders from *data*; unknown ones stay as-is."""
    return Template(template).safe_substitute({k: str(v) for k, v in data.items()})


class PromptAction(StepAction):
    """Render the prompt and run it through a reasoning provider.

    The provider is ``options["provider"]`` when set, else the registry default.
    The response text lands under ``result``; a dict under the response's
    ``metadata["data"]`` is merged in as structured output.
    """

    @property
    def tag(self) -> str:
        return "prompt"

    async def invoke(self, step_input: StepInput, providers: ProviderRegistry) -> StepOutput:
        provider = providers.get(step_input.options.get("provider"))
        prompt = render_prompt(step_input.prompt, step_input.data)
        response = await provider.execute(prompt, dict(step_input.options))
        if response.needs_current_execution:
            return StepOutput(content=prompt, response=response)

        data: dict[str, Any] = {"result": response.content, "step_index": step_input.step_index}
        structured = response.metadata.get("data")
        if isinstance(structured, dict):
            data.update(structured)
        return StepOutput(data=data, content=response.content, response=response)


class PassthroughAction(StepAction):
    """Forward the mapped input unchanged (useful for fan-in/aggregation steps)."""

    @property
    def tag(self) -> str:
        return "passthrough"

    async def invoke(self, step_input: StepInput, providers: ProviderRegistry) -> StepOutput:
        return StepOutput(data=dict(step_input.data))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ActionRegistry:
    """Action implementations available to the chain engine, looked up by tag."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._actions: dict[str, StepAction] = {}
        if include_builtins:
            self.register(PromptAction)
            self.register(PassthroughAction)

    def register(self, action: Union[StepAction, type[StepAction]]) -> Union[StepAction, type[StepAction]]:
        """Register an action instance or class. Can be used as a decorator."""
        instance = action() if isinstance(action, type) else action
        self._actions[instance.tag] = instance
        return action

    def get(self, tag: str) -> StepAction:
        if tag not in self._actions:
            available = ", ".join(sorted(self._actions))
            raise KeyError(f"Unknown action '{tag}' (registered: {available})")
        return self._actions[tag]

    def has(self, tag: str) -> bool:
        return tag in self._actions

    def list_actions(self) -> list[str]:
        return sorted(self._actions)
