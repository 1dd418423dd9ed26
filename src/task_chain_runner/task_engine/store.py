"""File-based task store with thread-safe locking.

Stores tasks in a single YAML file (``tasks.yaml``) inside the project's
``.task_chain/`` directory.  All reads and writes go through :func:`transaction`
which acquires an exclusive file lock, so every mutation is one
read-modify-write of the whole collection.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout

from ..constants import LOCK_TIMEOUT, TASKS_FILE, TASKS_LOCK_FILE
from ..errors import StorageError
from ..io_utils import _atomic_write_yaml, _load_data_strict
from .model import Task

STORE_VERSION = 1


# ---------------------------------------------------------------------------
# Low-level I/O
# ---------------------------------------------------------------------------

def _load_raw(path: Path) -> list[dict[str, Any]]:
    """Load the raw task list from *path*, returning ``[]`` if missing."""
    data = _load_data_strict(path, {})
    tasks = data.get("tasks")
    if tasks is None:
        return []
    if not isinstance(tasks, list):
        raise StorageError(f"{path.name}: 'tasks' must be a list")
    return [t for t in tasks if isinstance(t, dict)]


def _save_raw(path: Path, tasks: list[dict[str, Any]]) -> None:
    _atomic_write_yaml(path, {"version": STORE_VERSION, "tasks": tasks})


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Thread-safe, file-backed store for :class:`Task` objects.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_chain/`` directory for the project.
    """

    def __init__(self, state_dir: Path, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / TASKS_FILE
        self._lock_path = state_dir / TASKS_LOCK_FILE
        self._lock_timeout = lock_timeout
        self._lock = FileLock(str(self._lock_path), timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                yield
        except Timeout as exc:
            raise StorageError(
                f"Timed out after {self._lock_timeout}s waiting for {self._lock_path.name}"
            ) from exc

    def _load(self) -> list[Task]:
        return [Task.from_dict(d) for d in _load_raw(self._store_path)]

    def _save(self, tasks: list[Task]) -> None:
        _save_raw(self._store_path, [t.to_dict() for t in tasks])

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_TaskTx]:
        """Acquire the lock, load tasks, yield a transaction, and save on exit.

        Nothing is written when the block raises or calls ``tx.rollback()``.

        Usage::

            with store.transaction() as tx:
                task = tx.get("task-abc123")
                task.transition(TaskStatus.IN_PROGRESS)
                tx.dirty = True
                # automatically saved on exit
        """
        with self._locked():
            tx = _TaskTx(self._load())
            yield tx
            if tx.dirty and not tx.rolled_back:
                self._save(tx.tasks)

    def read_snapshot(self) -> list[Task]:
        """Return a read-only snapshot (no lock held after return)."""
        with self._locked():
            return self._load()

    def get_one(self, task_id: str) -> Optional[Task]:
        with self._locked():
            for t in self._load():
                if t.id == task_id:
                    return t
        return None


class _TaskTx:
    """In-memory transaction over a list of tasks.

    Mutations are collected and flushed back to disk when the ``transaction``
    context-manager exits.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = tasks
        self.dirty = False
        self.rolled_back = False
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}

    # -- lookups ------------------------------------------------------------

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def list_all(self) -> list[Task]:
        return list(self.tasks)

    def find(
        self,
        *,
        status: Optional[str] = None,
        chain_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Task]:
        out: list[Task] = []
        for t in self.tasks:
            if status and t.status.value != status:
                continue
            if chain_id is not None and t.chain_id != chain_id:
                continue
            if search:
                q = search.lower()
                haystack = " ".join(
                    part for part in (t.name, t.description, t.notes or "", t.summary or "") if part
                ).lower()
                if q not in haystack:
                    continue
            out.append(t)
        return out

    def find_by_name(self, name: str) -> Optional[Task]:
        for t in self.tasks:
            if t.name == name:
                return t
        return None

    def dependents_of(self, task_id: str) -> list[Task]:
        return [t for t in self.tasks if task_id in t.dependencies]

    # -- mutations ----------------------------------------------------------

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise ValueError(f"Task {task.id} already exists")
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        return task

    def add_many(self, tasks: list[Task]) -> list[Task]:
        for t in tasks:
            self.add(t)
        return tasks

    def update(self, task_id: str, changes: dict[str, Any]) -> Optional[Task]:
        task = self.get(task_id)
        if task is None:
            return None
        for key, value in changes.items():
            if hasattr(task, key):
                setattr(task, key, value)
        task.touch()
        self.dirty = True
        return task

    def hard_remove(self, task_id: str) -> bool:
        """Physically remove a task from the store."""
        idx = self._index.pop(task_id, None)
        if idx is None:
            return False
        self.tasks.pop(idx)
        self._reindex()
        self.dirty = True
        return True

    def remove_where(self, predicate: Any) -> list[Task]:
        removed = [t for t in self.tasks if predicate(t)]
        if removed:
            self.tasks = [t for t in self.tasks if not predicate(t)]
            self._reindex()
            self.dirty = True
        return removed

    def rollback(self) -> None:
        """Discard every change made in this transaction."""
        self.rolled_back = True

    def _reindex(self) -> None:
        self._index = {t.id: i for i, t in enumerate(self.tasks)}
