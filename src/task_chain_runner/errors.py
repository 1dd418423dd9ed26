"""Exception hierarchy shared by the task store, memory store, and chain engine.

Validation and not-found errors are surfaced to callers as-is and never retried.
Dependency errors carry the offending reference or cycle path.  Chain errors
carry a :class:`ChainErrorKind` so the active error strategy can decide what to
do with them.  Storage failures are :class:`StorageError` and always abort the
operation in flight.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class TaskChainError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(TaskChainError, ValueError):
    """Malformed input rejected before touching any store."""

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(TaskChainError, LookupError):
    """A referenced id does not exist."""

    kind = "object"

    def __init__(self, object_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{self.kind.capitalize()} not found: {object_id}")
        self.object_id = object_id


class TaskNotFoundError(NotFoundError):
    kind = "task"


class AnchorNotFoundError(NotFoundError):
    kind = "anchor task"


class KnowledgeNotFoundError(NotFoundError):
    kind = "knowledge entry"


class ExecutionNotFoundError(NotFoundError):
    kind = "execution context"


class ChainNotFoundError(NotFoundError):
    kind = "chain"


class TeamMemberNotFoundError(NotFoundError):
    kind = "team member"


class TeamRecordNotFoundError(NotFoundError):
    kind = "team record"


class TaskAlreadyCompletedError(TaskChainError):
    """Completed tasks cannot be deleted."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is completed and cannot be deleted")
        self.task_id = task_id


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class DependencyError(TaskChainError):
    """A dependency reference is missing or would break the graph."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class CycleDetectedError(DependencyError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = list(cycle)


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------

class ChainErrorKind(str, Enum):
    STEP_EXECUTION_FAILED = "step_execution_failed"
    DATA_MAPPING_ERROR = "data_mapping_error"
    TIMEOUT_ERROR = "timeout_error"
    DEPENDENCY_ERROR = "dependency_error"
    VALIDATION_ERROR = "validation_error"
    SYSTEM_ERROR = "system_error"


class ChainError(TaskChainError):
    """A failure inside a chain run, tagged with its kind and location."""

    def __init__(
        self,
        kind: ChainErrorKind,
        message: str,
        *,
        step_index: Optional[int] = None,
        task_id: Optional[str] = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.step_index = step_index
        self.task_id = task_id
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.kind.value,
            "message": self.message,
            "step_index": self.step_index,
            "task_id": self.task_id,
            "recoverable": self.recoverable,
        }


class StorageError(TaskChainError):
    """Reading or writing durable state failed."""

    kind = ChainErrorKind.SYSTEM_ERROR
