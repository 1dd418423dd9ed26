"""Tests for the task engine (task_engine/engine.py) and store (task_engine/store.py)."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from task_chain_runner.errors import (
    CycleDetectedError,
    DependencyError,
    TaskAlreadyCompletedError,
    TaskNotFoundError,
    ValidationError,
)
from task_chain_runner.task_engine.engine import TaskEngine
from task_chain_runner.task_engine.model import Task, TaskStatus, Urgency
from task_chain_runner.task_engine.store import TaskStore


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".task_chain"
    d.mkdir()
    return d


@pytest.fixture
def engine(state_dir: Path) -> TaskEngine:
    return TaskEngine(state_dir)


@pytest.fixture
def store(state_dir: Path) -> TaskStore:
    return TaskStore(state_dir)


# ---------------------------------------------------------------------------
# Store tests
# ---------------------------------------------------------------------------

class TestTaskStore:
    def test_empty_read(self, store: TaskStore) -> None:
        assert store.read_snapshot() == []

    def test_add_and_read(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add(Task(id="t1", name="First"))
            tx.add(Task(id="t2", name="Second"))

        tasks = store.read_snapshot()
        assert [t.id for t in tasks] == ["t1", "t2"]

    def test_duplicate_add_raises(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add(Task(id="t1", name="First"))
            with pytest.raises(ValueError, match="already exists"):
                tx.add(Task(id="t1", name="Duplicate"))

    def test_get_one(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add(Task(id="t1", name="Test"))

        t = store.get_one("t1")
        assert t is not None
        assert t.name == "Test"
        assert store.get_one("nonexistent") is None

    def test_exception_discards_changes(self, store: TaskStore) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.add(Task(id="t1", name="Never saved"))
                raise RuntimeError("boom")
        assert store.read_snapshot() == []

    def test_rollback_discards_changes(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add(Task(id="t1", name="Rolled back"))
            tx.rollback()
        assert store.read_snapshot() == []

    def test_find_filters(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add(Task(id="a", name="Write parser", status=TaskStatus.COMPLETED))
            tx.add(Task(id="b", name="Write lexer", chain_id="chain-1"))
            tx.add(Task(id="c", name="Docs", description="explain the parser"))

        with store.transaction() as tx:
            assert [t.id for t in tx.find(status="completed")] == ["a"]
            assert [t.id for t in tx.find(chain_id="chain-1")] == ["b"]
            assert [t.id for t in tx.find(search="PARSER")] == ["a", "c"]

    def test_persistence_survives_reload(self, state_dir: Path) -> None:
        s1 = TaskStore(state_dir)
        with s1.transaction() as tx:
            tx.add(Task(id="p1", name="Persist me", urgency=Urgency.HIGH, priority=7))

        s2 = TaskStore(state_dir)
        t = s2.get_one("p1")
        assert t is not None
        assert t.urgency == Urgency.HIGH
        assert t.priority == 7

    def test_file_is_versioned_yaml(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add(Task(id="y1", name="Yaml"))
        data = yaml.safe_load(store.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["tasks"][0]["id"] == "y1"


# ---------------------------------------------------------------------------
# Engine CRUD
# ---------------------------------------------------------------------------

class TestEngineCrud:
    def test_create_task(self, engine: TaskEngine) -> None:
        task = engine.create_task(
            name="Implement login",
            description="Add username/password login",
            priority=8,
            urgency="high",
            related_files=[{"path": "src/auth.py", "type": "to_modify"}],
        )
        assert task.id.startswith("task-")
        assert task.status == TaskStatus.PENDING
        fetched = engine.require_task(task.id)
        assert fetched.urgency == Urgency.HIGH
        assert fetched.related_files[0].path == "src/auth.py"

    def test_create_rejects_empty_name(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            engine.create_task(name="   ")

    def test_create_rejects_unknown_dependency(self, engine: TaskEngine) -> None:
        with pytest.raises(DependencyError) as excinfo:
            engine.create_task(name="Orphan", dependencies=["task-missing"])
        assert excinfo.value.missing == ["task-missing"]
        assert engine.list_tasks() == []

    def test_require_missing_raises(self, engine: TaskEngine) -> None:
        with pytest.raises(TaskNotFoundError):
            engine.require_task("task-nope")

    def test_list_by_status(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        engine.create_task(name="B")
        engine.update_task_status(a.id, "completed")
        assert [t.id for t in engine.list_tasks(status="completed")] == [a.id]
        assert len(engine.list_tasks(status="pending")) == 1

    def test_search_by_text_and_id(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="Refactor cache", description="LRU eviction")
        engine.create_task(name="Docs")
        assert [t.id for t in engine.search_tasks("eviction")] == [a.id]
        assert [t.id for t in engine.search_tasks(a.id, is_id=True)] == [a.id]
        assert engine.search_tasks("task-none", is_id=True) == []

    def test_update_fields(self, engine: TaskEngine) -> None:
        task = engine.create_task(name="Old")
        updated = engine.update_task(task.id, {"name": "New", "priority": 9, "urgency": "critical"})
        assert updated is not None
        assert updated.name == "New"
        assert updated.priority == 9
        assert updated.urgency == Urgency.CRITICAL

    def test_update_unknown_field_rejected(self, engine: TaskEngine) -> None:
        task = engine.create_task(name="T")
        with pytest.raises(ValidationError, match="Cannot update fields"):
            engine.update_task(task.id, {"bogus": 1})

    def test_update_missing_returns_none(self, engine: TaskEngine) -> None:
        assert engine.update_task("task-none", {"name": "x"}) is None

    def test_completed_task_is_immutable(self, engine: TaskEngine) -> None:
        task = engine.create_task(name="Done soon")
        engine.update_task_status(task.id, "completed", summary="shipped")
        with pytest.raises(ValidationError, match="only summary and status"):
            engine.update_task(task.id, {"description": "changed"})

        updated = engine.update_task(task.id, {"summary": "shipped v2"})
        assert updated is not None
        assert updated.summary == "shipped v2"

    def test_status_transition_tracks_completed_at(self, engine: TaskEngine) -> None:
        task = engine.create_task(name="T")
        done = engine.update_task_status(task.id, "completed")
        assert done.completed_at is not None
        reopened = engine.update_task_status(task.id, "in_progress")
        assert reopened.completed_at is None

    def test_invalid_status_rejected(self, engine: TaskEngine) -> None:
        task = engine.create_task(name="T")
        with pytest.raises(ValidationError):
            engine.update_task_status(task.id, "finished")

    def test_update_dependencies_rejects_cycle(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        b = engine.create_task(name="B", dependencies=[a.id])
        with pytest.raises(CycleDetectedError) as excinfo:
            engine.update_task(a.id, {"dependencies": [b.id]})
        assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]
        assert engine.require_task(a.id).dependencies == []

    def test_delete_task_cleans_dependents(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        b = engine.create_task(name="B", dependencies=[a.id])
        assert engine.delete_task(a.id) is True
        assert engine.get_task(a.id) is None
        assert engine.require_task(b.id).dependencies == []

    def test_delete_completed_fails_and_leaves_store(self, engine: TaskEngine, state_dir: Path) -> None:
        task = engine.create_task(name="Keep me")
        engine.update_task_status(task.id, "completed")
        before = (state_dir / "tasks.yaml").read_text(encoding="utf-8")
        with pytest.raises(TaskAlreadyCompletedError):
            engine.delete_task(task.id)
        assert (state_dir / "tasks.yaml").read_text(encoding="utf-8") == before

    def test_delete_missing_raises(self, engine: TaskEngine) -> None:
        with pytest.raises(TaskNotFoundError):
            engine.delete_task("task-none")

    def test_clear_all_keeps_completed(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        engine.create_task(name="B", dependencies=[a.id])
        engine.update_task_status(a.id, "completed")
        assert engine.clear_all_tasks() == 1
        assert [t.id for t in engine.list_tasks()] == [a.id]

    def test_delete_leaves_completed_dependents_untouched(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        done = engine.create_task(name="Done", dependencies=[a.id])
        open_ = engine.create_task(name="Open", dependencies=[a.id])
        engine.update_task_status(done.id, "completed")
        before = engine.require_task(done.id).to_dict()

        engine.delete_task(a.id)
        assert engine.require_task(done.id).to_dict() == before
        assert engine.require_task(open_.id).dependencies == []

    def test_clear_all_leaves_completed_dependencies(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        done = engine.create_task(name="Done", dependencies=[a.id])
        engine.update_task_status(done.id, "completed")
        before = engine.require_task(done.id).to_dict()

        assert engine.clear_all_tasks() == 1
        assert engine.require_task(done.id).to_dict() == before

    def test_add_and_remove_dependency(self, engine: TaskEngine) -> None:
        a = engine.create_task(name="A")
        b = engine.create_task(name="B")
        engine.add_dependency(b.id, a.id)
        assert engine.require_task(b.id).dependencies == [a.id]
        with pytest.raises(CycleDetectedError):
            engine.add_dependency(a.id, b.id)
        engine.remove_dependency(b.id, a.id)
        assert engine.require_task(b.id).dependencies == []

    def test_ready_tasks_ranked(self, engine: TaskEngine) -> None:
        low = engine.create_task(name="Low", urgency="low")
        crit = engine.create_task(name="Crit", urgency="critical")
        engine.create_task(name="Blocked", dependencies=[low.id])
        assert [t.id for t in engine.get_ready_tasks()] == [crit.id, low.id]


# ---------------------------------------------------------------------------
# Batch import
# ---------------------------------------------------------------------------

class TestBatch:
    def test_append_resolves_names_within_batch(self, engine: TaskEngine) -> None:
        tasks = engine.batch_create_or_update(
            [
                {"name": "Design schema", "description": "tables"},
                {"name": "Write migrations", "description": "alembic", "dependencies": ["Design schema"]},
            ]
        )
        by_name = {t.name: t for t in tasks}
        assert by_name["Write migrations"].dependencies == [by_name["Design schema"].id]

    def test_append_resolves_existing_names_and_ids(self, engine: TaskEngine) -> None:
        base = engine.create_task(name="Base")
        other = engine.create_task(name="Other")
        tasks = engine.batch_create_or_update(
            [{"name": "Child", "dependencies": ["Base", other.id]}]
        )
        assert tasks[0].dependencies == [base.id, other.id]

    def test_unresolved_reference_writes_nothing(self, engine: TaskEngine) -> None:
        with pytest.raises(DependencyError):
            engine.batch_create_or_update(
                [{"name": "First"}, {"name": "Second", "dependencies": ["Ghost"]}]
            )
        assert engine.list_tasks() == []

    def test_duplicate_names_rejected(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError, match="Duplicate"):
            engine.batch_create_or_update([{"name": "Same"}, {"name": "Same"}])

    def test_invalid_mode_rejected(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError, match="Invalid batch mode"):
            engine.batch_create_or_update([{"name": "X"}], mode="merge")

    def test_invalid_item_rejected(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            engine.batch_create_or_update([{"name": "X", "priority": 42}])

    def test_overwrite_keeps_completed(self, engine: TaskEngine) -> None:
        done = engine.create_task(name="Done")
        engine.update_task_status(done.id, "completed")
        engine.create_task(name="Stale")
        engine.batch_create_or_update([{"name": "Fresh", "dependencies": ["Done"]}], mode="overwrite")
        names = sorted(t.name for t in engine.list_tasks())
        assert names == ["Done", "Fresh"]

    def test_overwrite_leaves_completed_dependencies(self, engine: TaskEngine) -> None:
        stale = engine.create_task(name="Stale")
        done = engine.create_task(name="Done", dependencies=[stale.id])
        engine.update_task_status(done.id, "completed")
        engine.batch_create_or_update([{"name": "Fresh"}], mode="overwrite")
        assert engine.require_task(done.id).dependencies == [stale.id]

    def test_clear_all_tasks_mode(self, engine: TaskEngine) -> None:
        engine.create_task(name="Stale")
        engine.batch_create_or_update([{"name": "Fresh"}], mode="clearAllTasks")
        assert [t.name for t in engine.list_tasks()] == ["Fresh"]

    def test_selective_updates_by_name(self, engine: TaskEngine) -> None:
        existing = engine.create_task(name="Shared", description="old")
        tasks = engine.batch_create_or_update(
            [{"name": "Shared", "description": "new"}, {"name": "Extra"}], mode="selective"
        )
        assert tasks[0].id == existing.id
        assert engine.require_task(existing.id).description == "new"
        assert len(engine.list_tasks()) == 2

    def test_selective_refuses_completed_match(self, engine: TaskEngine) -> None:
        existing = engine.create_task(name="Shipped")
        engine.update_task_status(existing.id, "completed")
        with pytest.raises(ValidationError, match="completed"):
            engine.batch_create_or_update([{"name": "Shipped", "description": "again"}], mode="selective")


# ---------------------------------------------------------------------------
# Chain bookkeeping
# ---------------------------------------------------------------------------

class TestChainHelpers:
    def test_progress_and_cancel(self, engine: TaskEngine) -> None:
        engine.bulk_create(
            [
                Task(id="s0", name="Step 0", chain_id="c1", step_index=0, status=TaskStatus.COMPLETED),
                Task(id="s1", name="Step 1", chain_id="c1", step_index=1, status=TaskStatus.IN_PROGRESS),
                Task(id="s2", name="Step 2", chain_id="c1", step_index=2),
            ]
        )
        progress = engine.get_chain_progress("c1")
        assert progress["total"] == 3
        assert progress["completed"] == 1
        assert progress["in_progress"] == 1

        assert engine.cancel_chain_tasks("c1") == 2
        s1 = engine.require_task("s1")
        assert s1.chain_status == "chain_cancelled"
        assert s1.status == TaskStatus.PENDING
        assert engine.require_task("s0").chain_status is None

    def test_apply_step_state(self, engine: TaskEngine) -> None:
        engine.bulk_create([Task(id="s0", name="Step 0", chain_id="c1", step_index=0)])
        task = engine.apply_step_state(
            "s0", "step_completed", status=TaskStatus.COMPLETED, chain_data={"result": "ok"}
        )
        assert task is not None
        assert task.is_completed
        assert task.chain_data == {"result": "ok"}
        assert engine.apply_step_state("missing", "executing") is None


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_concurrent_creates_are_not_lost(self, engine: TaskEngine) -> None:
        workers = 6
        barrier = threading.Barrier(workers)
        errors: list[str] = []

        def _create(n: int) -> None:
            barrier.wait()
            try:
                engine.create_task(name=f"Task {n}")
            except Exception as exc:
                errors.append(str(exc))

        threads = [threading.Thread(target=_create, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert len(engine.list_tasks()) == workers

    def test_separate_engines_share_the_file_lock(self, state_dir: Path) -> None:
        e1 = TaskEngine(state_dir)
        e2 = TaskEngine(state_dir)
        barrier = threading.Barrier(2)

        def _create(eng: TaskEngine, name: str) -> None:
            barrier.wait()
            eng.create_task(name=name)

        threads = [
            threading.Thread(target=_create, args=(e1, "From e1")),
            threading.Thread(target=_create, args=(e2, "From e2")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert sorted(t.name for t in e1.list_tasks()) == ["From e1", "From e2"]
