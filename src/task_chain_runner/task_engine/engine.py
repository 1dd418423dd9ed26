"""Task engine: high-level CRUD, dependency management, and graph queries.

This is the primary entry-point for all task manipulation.  It wraps
:class:`TaskStore` with business logic (reference checks, cycle detection,
completed-task immutability, batch imports, chain bookkeeping).  Every
mutating method runs inside a single store transaction, so a method that
raises leaves the collection untouched.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from ..constants import COMPLETED_MUTABLE_FIELDS
from ..errors import (
    CycleDetectedError,
    DependencyError,
    TaskAlreadyCompletedError,
    TaskNotFoundError,
    ValidationError,
)
from ..schemas import BatchTaskItem, parse_model
from . import graph
from .model import RelatedFile, Task, TaskStatus, Urgency
from .store import TaskStore, _TaskTx

BATCH_MODES = ("append", "overwrite", "selective", "clearAllTasks")

_IMMUTABLE_FIELDS = {"id", "created_at"}
_UPDATABLE_FIELDS = {
    name for name in Task.__dataclass_fields__ if name not in _IMMUTABLE_FIELDS
}


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _coerce_status(value: Any) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(str(value))
    except ValueError:
        valid = [s.value for s in TaskStatus]
        raise ValidationError(f"Invalid status '{value}'. Valid values: {valid}") from None


def _coerce_urgency(value: Any) -> Optional[Urgency]:
    if value is None or isinstance(value, Urgency):
        return value
    try:
        return Urgency(str(value))
    except ValueError:
        valid = [u.value for u in Urgency]
        raise ValidationError(f"Invalid urgency '{value}'. Valid values: {valid}") from None


def _coerce_priority(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 10:
        raise ValidationError(f"Priority must be an integer between 1 and 10, got {value!r}")
    return value


def _coerce_related_files(values: Optional[Iterable[Any]]) -> list[RelatedFile]:
    out: list[RelatedFile] = []
    for item in values or []:
        out.append(item if isinstance(item, RelatedFile) else RelatedFile.from_dict(item))
    return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TaskEngine:
    """Manage the full lifecycle of tasks and their dependency edges.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_chain/`` directory.
    """

    def __init__(self, state_dir: Path, store: Optional[TaskStore] = None) -> None:
        self.store = store or TaskStore(state_dir)
        self._state_dir = state_dir

    # ------------------------------------------------------------------
    # Validation helpers (run inside a transaction)
    # ------------------------------------------------------------------

    @staticmethod
    def _check_dependencies_exist(tx: _TaskTx, task_id: str, dependencies: list[str]) -> None:
        if task_id in dependencies:
            raise DependencyError(f"Task {task_id} cannot depend on itself")
        missing = [d for d in dependencies if tx.get(d) is None]
        if missing:
            raise DependencyError(
                f"Task {task_id} references unknown dependencies: {', '.join(missing)}",
                missing=missing,
            )

    @staticmethod
    def _check_acyclic(tx: _TaskTx) -> None:
        cycle = graph.detect_cycle(tx.tasks)
        if cycle:
            raise CycleDetectedError(cycle)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_task(
        self,
        name: str,
        description: str = "",
        notes: Optional[str] = None,
        dependencies: Optional[list[str]] = None,
        related_files: Optional[list[Any]] = None,
        priority: Optional[int] = None,
        urgency: Optional[str] = None,
        implementation_guide: Optional[str] = None,
        verification_criteria: Optional[str] = None,
        blocks: Optional[list[str]] = None,
        related_tasks: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Task:
        """Create and persist a new task, returning it.

        Raises :class:`DependencyError` if any dependency id does not exist.
        """
        if not name or not name.strip():
            raise ValidationError("Task name must be non-empty")
        task = Task(
            name=name.strip(),
            description=description,
            notes=notes,
            priority=_coerce_priority(priority),
            urgency=_coerce_urgency(urgency),
            dependencies=list(dict.fromkeys(dependencies or [])),
            blocks=list(blocks or []),
            related_tasks=list(related_tasks or []),
            related_files=_coerce_related_files(related_files),
            implementation_guide=implementation_guide,
            verification_criteria=verification_criteria,
            metadata=dict(metadata or {}),
        )
        with self.store.transaction() as tx:
            self._check_dependencies_exist(tx, task.id, task.dependencies)
            tx.add(task)
        logger.info("Created task {}: {}", task.id, task.name)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.store.get_one(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, status: Optional[str] = None) -> list[Task]:
        if status is not None:
            status = _coerce_status(status).value
        with self.store.transaction() as tx:
            return tx.find(status=status)

    def search_tasks(self, query: str, is_id: bool = False) -> list[Task]:
        """Free-text keyword search over name/description/notes/summary, or exact id lookup."""
        if is_id:
            task = self.get_task(query)
            return [task] if task else []
        with self.store.transaction() as tx:
            return tx.find(search=query)

    def update_task(self, task_id: str, changes: dict[str, Any]) -> Optional[Task]:
        """Apply partial updates to a task.  Returns the updated task or None.

        Once a task is completed only ``summary`` and ``status`` may change.
        Dependency changes are re-validated against the whole graph.
        """
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(unknown)}")

        changes = dict(changes)
        if "priority" in changes:
            changes["priority"] = _coerce_priority(changes["priority"])
        if "urgency" in changes:
            changes["urgency"] = _coerce_urgency(changes["urgency"])
        if "related_files" in changes:
            changes["related_files"] = _coerce_related_files(changes["related_files"])
        new_status = _coerce_status(changes.pop("status")) if "status" in changes else None

        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                return None
            if task.is_completed:
                frozen = sorted(set(changes) - COMPLETED_MUTABLE_FIELDS)
                if frozen:
                    raise ValidationError(
                        f"Task {task_id} is completed; only summary and status can change "
                        f"(attempted: {', '.join(frozen)})"
                    )
            if "dependencies" in changes:
                deps = list(dict.fromkeys(changes["dependencies"] or []))
                self._check_dependencies_exist(tx, task_id, deps)
                changes["dependencies"] = deps

            tx.update(task_id, changes)
            if new_status is not None and new_status != task.status:
                task.transition(new_status)
            if "dependencies" in changes:
                self._check_acyclic(tx)
            logger.debug("Updated task {} fields={}", task_id, sorted(changes))
            return task

    def update_task_status(
        self, task_id: str, status: str, summary: Optional[str] = None
    ) -> Task:
        changes: dict[str, Any] = {"status": status}
        if summary is not None:
            changes["summary"] = summary
        task = self.update_task(task_id, changes)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def delete_task(self, task_id: str) -> bool:
        """Hard-delete a task that is not completed.

        Also removes it from the dependency lists of incomplete tasks.  Completed
        tasks are immutable, so theirs keep the dangling reference.
        """
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.is_completed:
                raise TaskAlreadyCompletedError(task_id)
            for other in tx.dependents_of(task_id):
                if not other.is_completed:
                    other.remove_dependency(task_id)
            tx.hard_remove(task_id)
        logger.info("Deleted task {}", task_id)
        return True

    def clear_all_tasks(self) -> int:
        """Drop every task that is not completed, returning how many were removed.

        The completed tasks left behind are not rewritten, even when they list a
        removed task as a dependency.
        """
        with self.store.transaction() as tx:
            removed = tx.remove_where(lambda t: not t.is_completed)
        logger.info("Cleared {} incomplete tasks", len(removed))
        return len(removed)

    def bulk_create(self, tasks: list[Task]) -> list[Task]:
        """Add pre-built tasks in one transaction, validating references and cycles."""
        with self.store.transaction() as tx:
            tx.add_many(tasks)
            for t in tasks:
                self._check_dependencies_exist(tx, t.id, t.dependencies)
            self._check_acyclic(tx)
        return tasks

    # ------------------------------------------------------------------
    # Batch import
    # ------------------------------------------------------------------

    def batch_create_or_update(self, items: list[dict[str, Any]], mode: str = "append") -> list[Task]:
        """Create or update a batch of tasks in one transaction.

        ``overwrite`` and ``clearAllTasks`` first discard every non-completed
        task.  ``selective`` updates tasks whose name matches an existing task
        and creates the rest.  ``append`` creates everything.

        Dependency references may be task names or ids.  Names resolve within
        the batch first, then against existing tasks.  Any unresolved reference
        raises :class:`DependencyError` and nothing is written.
        """
        if mode not in BATCH_MODES:
            raise ValidationError(f"Invalid batch mode '{mode}'. Valid modes: {list(BATCH_MODES)}")
        parsed = [parse_model(BatchTaskItem, item) for item in items]
        names = [p.name for p in parsed]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate task names in batch: {', '.join(duplicates)}")

        with self.store.transaction() as tx:
            if mode in ("overwrite", "clearAllTasks"):
                removed = tx.remove_where(lambda t: not t.is_completed)
                logger.info("Batch {}: discarded {} incomplete tasks", mode, len(removed))

            # Assign ids first so names inside the batch can be resolved.
            targets: list[Task] = []
            for item in parsed:
                existing = tx.find_by_name(item.name) if mode == "selective" else None
                if existing is not None and existing.is_completed:
                    raise ValidationError(f"Task '{item.name}' is completed and cannot be updated")
                targets.append(existing or Task(name=item.name))
            batch_ids = {item.name: task.id for item, task in zip(parsed, targets)}

            def _resolve(ref: str) -> Optional[str]:
                if ref in batch_ids:
                    return batch_ids[ref]
                if tx.get(ref) is not None:
                    return ref
                match = tx.find_by_name(ref)
                return match.id if match else None

            for item, task in zip(parsed, targets):
                resolved: list[str] = []
                missing: list[str] = []
                for ref in item.dependencies:
                    dep_id = _resolve(ref)
                    if dep_id is None:
                        missing.append(ref)
                    elif dep_id not in resolved:
                        resolved.append(dep_id)
                if missing:
                    raise DependencyError(
                        f"Task '{item.name}' references unknown dependencies: {', '.join(missing)}",
                        missing=missing,
                    )
                task.description = item.description
                task.notes = item.notes
                task.dependencies = resolved
                task.related_files = _coerce_related_files([f.model_dump() for f in item.related_files])
                task.implementation_guide = item.implementation_guide
                task.verification_criteria = item.verification_criteria
                task.priority = item.priority
                task.urgency = _coerce_urgency(item.urgency)
                task.touch()
                if tx.get(task.id) is None:
                    tx.add(task)
                tx.dirty = True

            for task in targets:
                if task.id in task.dependencies:
                    raise DependencyError(f"Task '{task.name}' cannot depend on itself")
            self._check_acyclic(tx)

        logger.info("Batch {} wrote {} tasks", mode, len(targets))
        return targets

    # ------------------------------------------------------------------
    # Dependency management
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_id: str) -> Task:
        """Make ``task_id`` depend on ``depends_on_id``.

        Raises :class:`CycleDetectedError` if the dependency would create a cycle.
        """
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.is_completed:
                raise ValidationError(f"Task {task_id} is completed; dependencies cannot change")
            self._check_dependencies_exist(tx, task_id, [depends_on_id])
            if task.add_dependency(depends_on_id):
                self._check_acyclic(tx)
                tx.dirty = True
            return task

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Task:
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.is_completed:
                raise ValidationError(f"Task {task_id} is completed; dependencies cannot change")
            if task.remove_dependency(depends_on_id):
                tx.dirty = True
            return task

    # ------------------------------------------------------------------
    # Graph queries (snapshot under the store lock)
    # ------------------------------------------------------------------

    def can_execute(self, task_id: str) -> graph.ExecutionCheck:
        return graph.can_execute(self.store.read_snapshot(), task_id)

    def detect_cycle(self) -> list[str]:
        return graph.detect_cycle(self.store.read_snapshot())

    def validate_references(self) -> graph.ReferenceReport:
        return graph.validate_references(self.store.read_snapshot())

    def get_execution_order(self) -> list[list[str]]:
        """Topological sort into batches of independent tasks."""
        tasks = self.store.read_snapshot()
        cycle = graph.detect_cycle(tasks)
        if cycle:
            logger.warning("Dependency cycle detected among tasks: {}", cycle)
        return graph.execution_order(tasks)

    def get_ready_tasks(self) -> list[Task]:
        """Return incomplete tasks whose dependencies are all completed."""
        tasks = self.store.read_snapshot()
        ready = [
            t for t in tasks
            if t.status == TaskStatus.PENDING and graph.can_execute(tasks, t.id).can_execute
        ]
        ready.sort(key=lambda t: (-t.rank[0], -t.rank[1], t.created_at))
        return ready

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def get_chain_tasks(self, chain_id: str) -> list[Task]:
        with self.store.transaction() as tx:
            tasks = tx.find(chain_id=chain_id)
        return sorted(tasks, key=lambda t: t.step_index if t.step_index is not None else 0)

    def get_chain_progress(self, chain_id: str) -> dict[str, Any]:
        tasks = self.get_chain_tasks(chain_id)
        total = len(tasks)
        completed = sum(1 for t in tasks if t.is_completed)
        failed = sum(1 for t in tasks if t.chain_status == "chain_failed")
        running = sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS)
        return {
            "chain_id": chain_id,
            "total": total,
            "completed": completed,
            "failed": failed,
            "in_progress": running,
            "pending": total - completed - failed - running,
            "percentage": round(100.0 * completed / total, 1) if total else 0.0,
        }

    def cancel_chain_tasks(self, chain_id: str) -> int:
        """Mark every unfinished task of a chain as cancelled; returns how many changed."""
        changed = 0
        with self.store.transaction() as tx:
            for t in tx.find(chain_id=chain_id):
                if t.is_completed or t.chain_status in ("chain_cancelled", "chain_failed"):
                    continue
                t.chain_status = "chain_cancelled"
                if t.status == TaskStatus.IN_PROGRESS:
                    t.transition(TaskStatus.PENDING)
                t.touch()
                changed += 1
            if changed:
                tx.dirty = True
        return changed

    def apply_step_state(
        self,
        task_id: str,
        chain_status: str,
        *,
        status: Optional[TaskStatus] = None,
        chain_data: Optional[dict[str, Any]] = None,
        summary: Optional[str] = None,
    ) -> Optional[Task]:
        """Write a chain step's state back onto its task.

        Completed tasks only get their summary and status touched.
        """
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                return None
            if not task.is_completed:
                task.chain_status = chain_status
                if chain_data is not None:
                    task.chain_data = dict(chain_data)
            if summary is not None:
                task.summary = summary
            if status is not None and status != task.status:
                task.transition(status)
            task.touch()
            tx.dirty = True
            return task
