"""Task model for the dependency-tracked task store.

Tasks are plain dataclasses that serialize to YAML/JSON-friendly dicts.  The
dependency relation is stored on the dependent task (``dependencies`` lists
the ids that must complete first); ``blocks`` is an optional declared forward
edge that may point at tasks that do not exist yet.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import DEFAULT_PRIORITY, URGENCY_WEIGHTS
from ..utils import _generate_id, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return URGENCY_WEIGHTS[self.value]


class RelatedFileType(str, Enum):
    TO_MODIFY = "to_modify"
    REFERENCE = "reference"
    CREATE = "create"
    DEPENDENCY = "dependency"
    OTHER = "other"


def _new_task_id() -> str:
    return _generate_id("task")


def _enum(enum_cls: type[Enum], raw: Any, default: Optional[Enum]) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


# ---------------------------------------------------------------------------
# Related files
# ---------------------------------------------------------------------------

@dataclass
class RelatedFile:
    path: str
    type: RelatedFileType = RelatedFileType.REFERENCE
    description: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "type": self.type.value,
            "description": self.description,
            "line_start": self.line_start,
            "line_end": self.line_end,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RelatedFile":
        if isinstance(data, str):
            return cls(path=data)
        return cls(
            path=str(data.get("path", "")),
            type=_enum(RelatedFileType, data.get("type"), RelatedFileType.REFERENCE),
            description=str(data.get("description", "") or ""),
            line_start=data.get("line_start"),
            line_end=data.get("line_end"),
        )


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of work with a status, optional ranking, and dependencies.

    Completed tasks are immutable except for ``summary`` and ``status``; the
    engine enforces this on every update.
    """

    # Identity
    id: str = field(default_factory=_new_task_id)
    name: str = ""
    description: str = ""
    notes: Optional[str] = None

    status: TaskStatus = TaskStatus.PENDING
    priority: Optional[int] = None  # 1 (lowest) .. 10 (highest)
    urgency: Optional[Urgency] = None

    # Dependencies
    dependencies: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    related_tasks: list[str] = field(default_factory=list)

    # Work definition
    related_files: list[RelatedFile] = field(default_factory=list)
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    summary: Optional[str] = None

    # Chain membership
    chain_id: Optional[str] = None
    step_index: Optional[int] = None
    chain_data: dict[str, Any] = field(default_factory=dict)
    parent_step_id: Optional[str] = None
    child_step_ids: list[str] = field(default_factory=list)
    chain_status: Optional[str] = None

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        data: dict[str, Any] = {}
        for k, v in asdict(self).items():
            if isinstance(v, Enum):
                data[k] = v.value
            else:
                data[k] = v
        data["related_files"] = [f.to_dict() for f in self.related_files]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        priority = d.pop("priority", None)
        step_index = d.pop("step_index", None)
        return cls(
            id=str(d.pop("id", None) or _new_task_id()),
            name=str(d.pop("name", "") or ""),
            description=str(d.pop("description", "") or ""),
            notes=d.pop("notes", None),
            status=_enum(TaskStatus, d.pop("status", None), TaskStatus.PENDING),
            priority=int(priority) if priority is not None else None,
            urgency=_enum(Urgency, d.pop("urgency", None), None),
            dependencies=_unique(d.pop("dependencies", []) or []),
            blocks=list(d.pop("blocks", []) or []),
            related_tasks=list(d.pop("related_tasks", []) or []),
            related_files=[RelatedFile.from_dict(f) for f in d.pop("related_files", []) or []],
            implementation_guide=d.pop("implementation_guide", None),
            verification_criteria=d.pop("verification_criteria", None),
            summary=d.pop("summary", None),
            chain_id=d.pop("chain_id", None),
            step_index=int(step_index) if step_index is not None else None,
            chain_data=dict(d.pop("chain_data", {}) or {}),
            parent_step_id=d.pop("parent_step_id", None),
            child_step_ids=list(d.pop("child_step_ids", []) or []),
            chain_status=d.pop("chain_status", None),
            created_at=str(d.pop("created_at", None) or _now_iso()),
            updated_at=str(d.pop("updated_at", None) or _now_iso()),
            completed_at=d.pop("completed_at", None),
            metadata=dict(d.pop("metadata", {}) or {}),
        )

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    def transition(self, new_status: TaskStatus) -> None:
        """Move to *new_status* with timestamp bookkeeping."""
        self.status = new_status
        if new_status == TaskStatus.COMPLETED:
            self.completed_at = self.completed_at or _now_iso()
        else:
            self.completed_at = None
        self.touch()

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def rank(self) -> tuple[int, int]:
        """Sort key for "most important first" ordering (higher is more important)."""
        urgency = self.urgency.weight if self.urgency else URGENCY_WEIGHTS["medium"]
        priority = self.priority if self.priority is not None else DEFAULT_PRIORITY
        return urgency, priority

    # ------------------------------------------------------------------
    # Dependency helpers
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str) -> bool:
        if task_id in self.dependencies:
            return False
        self.dependencies.append(task_id)
        self.touch()
        return True

    def remove_dependency(self, task_id: str) -> bool:
        if task_id not in self.dependencies:
            return False
        self.dependencies.remove(task_id)
        self.touch()
        return True

    def replace_dependency(self, old_id: str, new_id: str) -> bool:
        """Swap *old_id* for *new_id*, keeping the list free of duplicates."""
        if old_id not in self.dependencies:
            return False
        deps = [new_id if d == old_id else d for d in self.dependencies]
        self.dependencies = _unique(deps)
        self.touch()
        return True


def _unique(values: list[Any]) -> list[str]:
    out: list[str] = []
    for v in values:
        s = str(v)
        if s not in out:
            out.append(s)
    return out
