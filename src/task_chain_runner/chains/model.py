"""Chain run state: steps, events, configuration and results.

A :class:`ChainRun` is the transient state the engine works on.  It is
serialized to the execution memory namespace after every step so an
interrupted run can be inspected, retried, or resumed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import (
    DEFAULT_ENABLE_PARALLEL,
    DEFAULT_ERROR_STRATEGY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_TOTAL_TIMEOUT_SECONDS,
)
from ..utils import _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class StepState(str, Enum):
    """Per-step state machine.

    WAITING_FOR_PARENT -> READY_TO_EXECUTE -> EXECUTING ->
    STEP_COMPLETED | WAITING_FOR_DATA -> DATA_PROCESSING -> STEP_COMPLETED | CHAIN_FAILED.
    CHAIN_CANCELLED is reachable from any non-terminal state.
    """

    WAITING_FOR_PARENT = "waiting_for_parent"
    READY_TO_EXECUTE = "ready_to_execute"
    EXECUTING = "executing"
    WAITING_FOR_DATA = "waiting_for_data"
    DATA_PROCESSING = "data_processing"
    STEP_COMPLETED = "step_completed"
    CHAIN_FAILED = "chain_failed"
    CHAIN_CANCELLED = "chain_cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StepState.STEP_COMPLETED, StepState.CHAIN_FAILED, StepState.CHAIN_CANCELLED)


class ChainRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # paused until a step's output is submitted
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ChainRunStatus.COMPLETED, ChainRunStatus.FAILED, ChainRunStatus.CANCELLED)


class ChainEventType(str, Enum):
    CHAIN_STARTED = "chain_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRIED = "step_retried"
    DATA_PASSED = "data_passed"
    CHAIN_COMPLETED = "chain_completed"
    CHAIN_FAILED = "chain_failed"
    CHAIN_CANCELLED = "chain_cancelled"
    TIMEOUT_ERROR = "timeout_error"


class ErrorStrategy(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE_ON_ERROR = "continue_on_error"
    RETRY_ON_ERROR = "retry_on_error"
    SKIP_ON_ERROR = "skip_on_error"


# ---------------------------------------------------------------------------
# Config / events
# ---------------------------------------------------------------------------

@dataclass
class ChainExecutionConfig:
    max_retries: int = DEFAULT_MAX_RETRIES
    step_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    total_timeout_seconds: float = DEFAULT_TOTAL_TIMEOUT_SECONDS
    error_strategy: ErrorStrategy = ErrorStrategy(DEFAULT_ERROR_STRATEGY)
    enable_parallel: bool = DEFAULT_ENABLE_PARALLEL

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "step_timeout_seconds": self.step_timeout_seconds,
            "total_timeout_seconds": self.total_timeout_seconds,
            "error_strategy": self.error_strategy.value,
            "enable_parallel": self.enable_parallel,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainExecutionConfig":
        return cls(
            max_retries=int(data.get("max_retries", DEFAULT_MAX_RETRIES)),
            step_timeout_seconds=float(data.get("step_timeout_seconds", DEFAULT_STEP_TIMEOUT_SECONDS)),
            total_timeout_seconds=float(data.get("total_timeout_seconds", DEFAULT_TOTAL_TIMEOUT_SECONDS)),
            error_strategy=ErrorStrategy(data.get("error_strategy") or DEFAULT_ERROR_STRATEGY),
            enable_parallel=bool(data.get("enable_parallel", DEFAULT_ENABLE_PARALLEL)),
        )


@dataclass
class ChainEvent:
    event_type: ChainEventType
    chain_id: str
    step_index: Optional[int] = None
    task_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "chain_id": self.chain_id,
            "step_index": self.step_index,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainEvent":
        return cls(
            event_type=ChainEventType(data["event_type"]),
            chain_id=str(data.get("chain_id", "")),
            step_index=data.get("step_index"),
            task_id=data.get("task_id"),
            payload=dict(data.get("payload") or {}),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Steps / runs
# ---------------------------------------------------------------------------

@dataclass
class ChainStep:
    """One step of a chain and the task that tracks it."""
    index: int
    name: str
    task_id: str
    action: str = "prompt"
    prompt: str = ""
    input_mapping: dict[str, str] = field(default_factory=dict)
    output_mapping: dict[str, str] = field(default_factory=dict)
    track: Optional[str] = None
    parents: list[int] = field(default_factory=list)
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None
    options: dict[str, Any] = field(default_factory=dict)

    state: StepState = StepState.WAITING_FOR_PARENT
    attempts: int = 0
    output: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    pending_prompt: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "task_id": self.task_id,
            "action": self.action,
            "prompt": self.prompt,
            "input_mapping": dict(self.input_mapping),
            "output_mapping": dict(self.output_mapping),
            "track": self.track,
            "parents": list(self.parents),
            "timeout_seconds": self.timeout_seconds,
            "max_retries": self.max_retries,
            "options": dict(self.options),
            "state": self.state.value,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
            "pending_prompt": self.pending_prompt,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainStep":
        return cls(
            index=int(data["index"]),
            name=str(data.get("name", "")),
            task_id=str(data.get("task_id", "")),
            action=str(data.get("action") or "prompt"),
            prompt=str(data.get("prompt") or ""),
            input_mapping=dict(data.get("input_mapping") or {}),
            output_mapping=dict(data.get("output_mapping") or {}),
            track=data.get("track"),
            parents=[int(p) for p in data.get("parents") or []],
            timeout_seconds=data.get("timeout_seconds"),
            max_retries=data.get("max_retries"),
            options=dict(data.get("options") or {}),
            state=StepState(data.get("state") or StepState.WAITING_FOR_PARENT.value),
            attempts=int(data.get("attempts", 0) or 0),
            output=data.get("output"),
            error=data.get("error"),
            pending_prompt=data.get("pending_prompt"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass
class ChainResult:
    chain_id: str
    status: ChainRunStatus
    success: bool
    completed_steps: int
    total_steps: int
    step_results: dict[int, Any] = field(default_factory=dict)
    final_data: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    events: list[ChainEvent] = field(default_factory=list)
    waiting_steps: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "status": self.status.value,
            "success": self.success,
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "step_results": {str(k): v for k, v in self.step_results.items()},
            "final_data": dict(self.final_data),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "events": [e.to_dict() for e in self.events],
            "waiting_steps": list(self.waiting_steps),
        }


@dataclass
class ChainRun:
    chain_id: str
    name: str
    steps: list[ChainStep]
    config: ChainExecutionConfig = field(default_factory=ChainExecutionConfig)
    description: str = ""
    status: ChainRunStatus = ChainRunStatus.PENDING
    data: dict[str, Any] = field(default_factory=dict)
    events: list[ChainEvent] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    execution_id: Optional[str] = None
    cancel_requested: bool = False
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def step(self, index: int) -> ChainStep:
        return self.steps[index]

    def children_of(self, index: int) -> list[ChainStep]:
        return [s for s in self.steps if index in s.parents]

    @property
    def completed_steps(self) -> int:
        return sum(1 for s in self.steps if s.state == StepState.STEP_COMPLETED)

    @property
    def progress(self) -> float:
        if not self.steps:
            return 0.0
        return self.completed_steps / len(self.steps)

    def to_result(self) -> ChainResult:
        return ChainResult(
            chain_id=self.chain_id,
            status=self.status,
            success=self.status == ChainRunStatus.COMPLETED,
            completed_steps=self.completed_steps,
            total_steps=len(self.steps),
            step_results={s.index: s.output for s in self.steps if s.state == StepState.STEP_COMPLETED},
            final_data=dict(self.data),
            errors=list(self.errors),
            warnings=list(self.warnings),
            events=list(self.events),
            waiting_steps=[s.index for s in self.steps if s.state == StepState.WAITING_FOR_DATA],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "data": dict(self.data),
            "events": [e.to_dict() for e in self.events],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "execution_id": self.execution_id,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainRun":
        return cls(
            chain_id=str(data["chain_id"]),
            name=str(data.get("name", "")),
            description=str(data.get("description", "") or ""),
            status=ChainRunStatus(data.get("status") or ChainRunStatus.PENDING.value),
            config=ChainExecutionConfig.from_dict(data.get("config") or {}),
            steps=[ChainStep.from_dict(s) for s in data.get("steps") or []],
            data=dict(data.get("data") or {}),
            events=[ChainEvent.from_dict(e) for e in data.get("events") or []],
            errors=list(data.get("errors") or []),
            warnings=list(data.get("warnings") or []),
            execution_id=data.get("execution_id"),
            cancel_requested=bool(data.get("cancel_requested", False)),
            created_at=str(data.get("created_at") or _now_iso()),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )
