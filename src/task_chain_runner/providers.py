"""Reasoning providers consumed by the chain engine.

A provider executes a prompt and returns a :class:`ProviderResponse`.  Every
provider and response carries a :class:`ProviderKind` tag; the engine branches
on the tag rather than on the provider's class.  The ``current_execution`` kind
is a sentinel: it never calls anything, it answers with a marker telling the
caller to route the prompt to the agent that invoked the chain.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .errors import TaskChainError

CURRENT_EXECUTION_ID = "current-execution"


class ProviderKind(str, Enum):
    CURRENT_EXECUTION = "current_execution"
    EXTERNAL = "external"


class ProviderError(TaskChainError):
    """A provider failed to produce a response."""


@dataclass
class ProviderResponse:
    content: str
    kind: ProviderKind = ProviderKind.EXTERNAL
    provider_id: str = ""
    model: Optional[str] = None
    tokens_used: int = 0
    cost: float = 0.0
    response_time: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def needs_current_execution(self) -> bool:
        return self.kind == ProviderKind.CURRENT_EXECUTION

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "kind": self.kind.value,
            "provider_id": self.provider_id,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "response_time": self.response_time,
            "metadata": dict(self.metadata),
        }


class ReasoningProvider(ABC):
    """Something that can be asked to execute a prompt."""

    kind: ProviderKind = ProviderKind.EXTERNAL

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @abstractmethod
    async def execute(self, prompt: str, options: Optional[dict[str, Any]] = None) -> ProviderResponse:
        """Run *prompt*.  May raise any exception; callers treat it as a step failure."""
        ...


class CurrentExecutionProvider(ReasoningProvider):
    """Sentinel provider handing the prompt back to the invoking agent."""

    kind = ProviderKind.CURRENT_EXECUTION

    @property
    def id(self) -> str:
        return CURRENT_EXECUTION_ID

    async def execute(self, prompt: str, options: Optional[dict[str, Any]] = None) -> ProviderResponse:
        return ProviderResponse(
            content=prompt,
            kind=self.kind,
            provider_id=self.id,
            model="current-execution",
            metadata={
                "instruction": "Execute this prompt in the current session and submit the output back to the chain.",
                "options": dict(options or {}),
            },
        )


ProviderFn = Callable[[str, dict[str, Any]], Union[Any, Awaitable[Any]]]


class CallableProvider(ReasoningProvider):
    """Adapt a plain (sync or async) function into an external provider.

    The function receives ``(prompt, options)`` and may return a string, a
    dict (used as structured ``metadata`` with its ``content`` key as the
    text), or a ready :class:`ProviderResponse`.
    """

    def __init__(self, provider_id: str, fn: ProviderFn, model: Optional[str] = None) -> None:
        self._id = provider_id
        self._fn = fn
        self._model = model

    @property
    def id(self) -> str:
        return self._id

    async def execute(self, prompt: str, options: Optional[dict[str, Any]] = None) -> ProviderResponse:
        started = time.monotonic()
        result = self._fn(prompt, dict(options or {}))
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result
        elapsed = time.monotonic() - started

        if isinstance(result, ProviderResponse):
            return result
        if isinstance(result, dict):
            return ProviderResponse(
                content=str(result.get("content", "")),
                provider_id=self._id,
                model=self._model,
                response_time=elapsed,
                metadata=dict(result),
            )
        if result is None:
            raise ProviderError(f"Provider {self._id} returned no content")
        return ProviderResponse(content=str(result), provider_id=self._id, model=self._model, response_time=elapsed)


class ProviderRegistry:
    """Providers available to chain steps, looked up by id."""

    def __init__(self, default: Optional[ReasoningProvider] = None) -> None:
        self._providers: dict[str, ReasoningProvider] = {}
        self._default = default or CurrentExecutionProvider()
        self.register(self._default)

    def register(self, provider: ReasoningProvider) -> ReasoningProvider:
        self._providers[provider.id] = provider
        return provider

    def get(self, provider_id: Optional[str] = None) -> ReasoningProvider:
        if provider_id is None:
            return self._default
        if provider_id not in self._providers:
            available = ", ".join(sorted(self._providers))
            raise KeyError(f"Unknown provider '{provider_id}' (registered: {available})")
        return self._providers[provider_id]

    @property
    def default(self) -> ReasoningProvider:
        return self._default

    def set_default(self, provider_id: str) -> None:
        self._default = self.get(provider_id)

    def list_providers(self) -> list[str]:
        return sorted(self._providers)
