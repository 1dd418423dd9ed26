"""Tests for chain execution (chains/executor.py and chains/manager.py)."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from task_chain_runner.chains.actions import ActionRegistry, StepAction, StepInput, StepOutput
from task_chain_runner.chains.manager import ChainManager, resolve_parents
from task_chain_runner.chains.model import ChainEventType, ChainRunStatus, StepState
from task_chain_runner.context import ProjectContext
from task_chain_runner.errors import ChainNotFoundError, StorageError, ValidationError
from task_chain_runner.memory.model import ExecutionStatus, StepStatus
from task_chain_runner.providers import CallableProvider, ProviderRegistry
from task_chain_runner.schemas import ChainStepSpec
from task_chain_runner.task_engine.model import TaskStatus


def _manager(tmp_path: Path, fn: Any = None, **kwargs: Any) -> ChainManager:
    ctx = ProjectContext.for_project(tmp_path)
    providers = ProviderRegistry(CallableProvider("test", fn)) if fn else ProviderRegistry()
    return ChainManager(ctx, providers=providers, **kwargs)


def _chain(*prompts: str, **extra: Any) -> dict[str, Any]:
    return {
        "name": extra.pop("name", "test chain"),
        "steps": [{"name": f"step {i}", "prompt": p} for i, p in enumerate(prompts)],
        **extra,
    }


def _events(result, event_type: ChainEventType, step_index: int | None = None) -> list:
    return [
        e for e in result.events
        if e.event_type == event_type and (step_index is None or e.step_index == step_index)
    ]


def _echo(prompt: str, options: dict) -> str:
    return f"out:{prompt}"


def _fail_on_boom(prompt: str, options: dict) -> str:
    if "boom" in prompt:
        raise RuntimeError("provider exploded")
    return "ok"


# ---------------------------------------------------------------------------
# Parent resolution
# ---------------------------------------------------------------------------

class TestResolveParents:
    def _specs(self, *steps: dict) -> list[ChainStepSpec]:
        return [ChainStepSpec(name=f"s{i}", **s) for i, s in enumerate(steps)]

    def test_linear_by_default(self) -> None:
        assert resolve_parents(self._specs({}, {}, {})) == [[], [0], [1]]

    def test_tracks_fan_out_and_join(self) -> None:
        specs = self._specs({}, {"track": "a"}, {"track": "b"}, {"track": "a"}, {})
        assert resolve_parents(specs) == [[], [0], [0], [1], [2, 3]]

    def test_explicit_parents(self) -> None:
        specs = self._specs({}, {}, {"parents": [0]})
        assert resolve_parents(specs) == [[], [0], [0]]

    def test_parent_must_precede(self) -> None:
        with pytest.raises(ValidationError, match="earlier steps"):
            resolve_parents(self._specs({}, {"parents": [1]}))


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestLinearChain:
    def test_data_flows_between_steps(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        definition = {
            "name": "research",
            "steps": [
                {"name": "research", "prompt": "Research $topic", "output_mapping": {"result": "research"}},
                {"name": "summarize", "prompt": "Summarize $notes", "input_mapping": {"notes": "research"}},
            ],
        }
        result = asyncio.run(manager.start(definition, initial_data={"topic": "parsers"}))

        assert result.status == ChainRunStatus.COMPLETED
        assert result.success is True
        assert result.final_data["research"] == "out:Research parsers"
        assert result.step_results[1]["result"] == "out:Summarize out:Research parsers"
        assert result.events[0].event_type == ChainEventType.CHAIN_STARTED
        assert result.events[-1].event_type == ChainEventType.CHAIN_COMPLETED
        passed = _events(result, ChainEventType.DATA_PASSED, 0)
        assert [e.payload["to_step"] for e in passed] == [1]

    def test_tasks_and_memory_are_written_back(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        result = asyncio.run(manager.start(_chain("one", "two")))

        tasks = manager.engine.get_chain_tasks(result.chain_id)
        assert [t.step_index for t in tasks] == [0, 1]
        assert all(t.status == TaskStatus.COMPLETED for t in tasks)
        assert all(t.chain_status == StepState.STEP_COMPLETED.value for t in tasks)
        assert tasks[1].dependencies == [tasks[0].id]
        assert tasks[0].child_step_ids == [tasks[1].id]
        assert tasks[1].parent_step_id == tasks[0].id
        assert tasks[0].chain_data["result"] == "out:one"

        status = manager.get_status(result.chain_id)
        ctx = manager.memory.get_context(status["execution_id"])
        assert ctx.status == ExecutionStatus.COMPLETED
        assert ctx.chain_id == result.chain_id
        assert [s.status for s in ctx.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
        assert "completed" in ctx.summary

    def test_get_status(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        result = asyncio.run(manager.start(_chain("one", "two")))
        status = manager.get_status(result.chain_id)
        assert status["status"] == "completed"
        assert status["progress"] == {"completed": 2, "total": 2, "percentage": 100.0}
        assert status["tasks"]["completed"] == 2
        assert status["active"] is False
        assert [s["state"] for s in status["steps"]] == ["step_completed", "step_completed"]
        assert manager.list_chains()[0]["chain_id"] == result.chain_id

    def test_unknown_chain(self, tmp_path: Path) -> None:
        with pytest.raises(ChainNotFoundError):
            _manager(tmp_path).get_status("chain-missing")

    def test_event_callback_failures_do_not_break_the_run(self, tmp_path: Path) -> None:
        seen: list[str] = []

        def _callback(event) -> None:
            seen.append(event.event_type.value)
            raise RuntimeError("listener bug")

        manager = _manager(tmp_path, _echo, on_event=_callback)
        result = asyncio.run(manager.start(_chain("one")))
        assert result.status == ChainRunStatus.COMPLETED
        assert seen[0] == "chain_started"
        assert seen[-1] == "chain_completed"

    def test_custom_action(self, tmp_path: Path) -> None:
        actions = ActionRegistry()

        @actions.register
        class Upper(StepAction):
            @property
            def tag(self) -> str:
                return "upper"

            async def invoke(self, step_input: StepInput, providers: ProviderRegistry) -> StepOutput:
                return StepOutput(data={"shout": str(step_input.data["word"]).upper()})

        manager = _manager(tmp_path, actions=actions)
        definition = {"name": "custom", "steps": [{"name": "shout", "action": "upper"}]}
        result = asyncio.run(manager.start(definition, initial_data={"word": "hi"}))
        assert result.final_data["shout"] == "HI"


# ---------------------------------------------------------------------------
# Error strategies
# ---------------------------------------------------------------------------

class TestErrorStrategies:
    def test_fail_fast_stops_downstream(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _fail_on_boom)
        result = asyncio.run(
            manager.start(_chain("fine", "boom", "never"), config={"error_strategy": "fail_fast"})
        )
        assert result.status == ChainRunStatus.FAILED
        assert _events(result, ChainEventType.STEP_STARTED, 2) == []
        assert result.errors[0]["type"] == "step_execution_failed"
        assert result.errors[0]["step_index"] == 1
        assert "provider exploded" in result.errors[0]["message"]

        status = manager.get_status(result.chain_id)
        assert status["steps"][2]["state"] == StepState.WAITING_FOR_PARENT.value
        assert status["steps"][1]["state"] == StepState.CHAIN_FAILED.value
        ctx = manager.memory.get_context(status["execution_id"])
        assert ctx.status == ExecutionStatus.FAILED

    def test_retry_bound(self, tmp_path: Path) -> None:
        calls: list[str] = []

        def _always_fails(prompt: str, options: dict) -> str:
            calls.append(prompt)
            raise RuntimeError("nope")

        manager = _manager(tmp_path, _always_fails)
        result = asyncio.run(
            manager.start(_chain("doomed"), config={"error_strategy": "retry_on_error", "max_retries": 2})
        )
        assert len(calls) == 3
        assert len(_events(result, ChainEventType.STEP_STARTED, 0)) == 3
        assert len(_events(result, ChainEventType.STEP_RETRIED, 0)) == 2
        assert result.status == ChainRunStatus.FAILED
        status = manager.get_status(result.chain_id)
        assert status["steps"][0]["state"] == StepState.CHAIN_FAILED.value
        assert status["steps"][0]["attempts"] == 3

    def test_retry_recovers_from_transient_failure(self, tmp_path: Path) -> None:
        calls = {"n": 0}

        def _flaky(prompt: str, options: dict) -> str:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")
            return "recovered"

        manager = _manager(tmp_path, _flaky)
        result = asyncio.run(manager.start(_chain("try"), config={"error_strategy": "retry_on_error"}))
        assert result.status == ChainRunStatus.COMPLETED
        assert result.final_data["result"] == "recovered"

    def test_step_level_max_retries_override(self, tmp_path: Path) -> None:
        calls: list[str] = []

        def _always_fails(prompt: str, options: dict) -> str:
            calls.append(prompt)
            raise RuntimeError("nope")

        manager = _manager(tmp_path, _always_fails)
        definition = {"name": "override", "steps": [{"name": "s", "prompt": "p", "max_retries": 0}]}
        asyncio.run(manager.start(definition, config={"error_strategy": "retry_on_error", "max_retries": 5}))
        assert len(calls) == 1

    def test_skip_on_error(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _fail_on_boom)
        result = asyncio.run(
            manager.start(_chain("fine", "boom", "after"), config={"error_strategy": "skip_on_error"})
        )
        assert result.status == ChainRunStatus.COMPLETED
        assert result.step_results[1] == {}
        assert result.completed_steps == 3
        assert any("skipped" in w for w in result.warnings)
        assert _events(result, ChainEventType.STEP_FAILED, 1)
        assert _events(result, ChainEventType.STEP_STARTED, 2)

    def test_continue_on_error_runs_independent_track(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _fail_on_boom)
        definition = {
            "name": "tracks",
            "steps": [
                {"name": "bad", "prompt": "boom", "track": "a"},
                {"name": "good", "prompt": "fine", "track": "b"},
                {"name": "join", "prompt": "merge"},
            ],
        }
        result = asyncio.run(manager.start(definition, config={"error_strategy": "continue_on_error"}))
        assert result.status == ChainRunStatus.COMPLETED
        assert result.success is True
        assert 1 in result.step_results
        assert _events(result, ChainEventType.STEP_STARTED, 2) == []
        assert any("did not run" in w for w in result.warnings)
        assert result.errors == []

    def test_missing_input_mapping_is_not_retried(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        definition = {
            "name": "mapping",
            "steps": [{"name": "s", "prompt": "$x", "input_mapping": {"x": "absent"}}],
        }
        result = asyncio.run(manager.start(definition, config={"error_strategy": "retry_on_error"}))
        assert result.status == ChainRunStatus.FAILED
        assert result.errors[0]["type"] == "data_mapping_error"
        assert result.errors[0]["recoverable"] is False
        assert len(_events(result, ChainEventType.STEP_STARTED, 0)) == 1

    def test_missing_output_mapping_source(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        definition = {
            "name": "mapping",
            "steps": [{"name": "s", "prompt": "p", "output_mapping": {"nothing": "x"}}],
        }
        result = asyncio.run(manager.start(definition, config={"error_strategy": "fail_fast"}))
        assert result.errors[0]["type"] == "data_mapping_error"


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

class TestTimeouts:
    def test_step_timeout_emits_timeout_event(self, tmp_path: Path) -> None:
        async def _slow(prompt: str, options: dict) -> str:
            await asyncio.sleep(1.0)
            return "late"

        manager = _manager(tmp_path, _slow)
        definition = {"name": "slow", "steps": [{"name": "s", "prompt": "p", "timeout_seconds": 0.05}]}
        result = asyncio.run(manager.start(definition, config={"error_strategy": "fail_fast"}))
        assert result.status == ChainRunStatus.FAILED
        timeouts = _events(result, ChainEventType.TIMEOUT_ERROR, 0)
        assert len(timeouts) == 1
        assert timeouts[0].payload["timeout_seconds"] == 0.05
        assert result.errors[0]["type"] == "timeout_error"

    def test_total_timeout_fails_the_run(self, tmp_path: Path) -> None:
        async def _slow(prompt: str, options: dict) -> str:
            await asyncio.sleep(5.0)
            return "late"

        manager = _manager(tmp_path, _slow)
        result = asyncio.run(
            manager.start(
                _chain("p"),
                config={"error_strategy": "fail_fast", "total_timeout_seconds": 0.1, "step_timeout_seconds": 10},
            )
        )
        assert result.status == ChainRunStatus.FAILED
        assert any(e["type"] == "timeout_error" and e["step_index"] is None for e in result.errors)
        status = manager.get_status(result.chain_id)
        assert status["steps"][0]["state"] == StepState.CHAIN_FAILED.value


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    def test_cancel_during_run(self, tmp_path: Path) -> None:
        holder: dict[str, ChainManager] = {}

        def _cancel_on_first(prompt: str, options: dict) -> str:
            if prompt == "first":
                assert holder["manager"].cancel("chain-cancel") is True
            return "done"

        manager = _manager(tmp_path, _cancel_on_first)
        holder["manager"] = manager
        result = asyncio.run(manager.start(_chain("first", "second", id="chain-cancel")))

        assert result.status == ChainRunStatus.CANCELLED
        assert result.step_results[0]["result"] == "done"
        assert _events(result, ChainEventType.STEP_STARTED, 1) == []
        assert _events(result, ChainEventType.CHAIN_CANCELLED)
        tasks = manager.engine.get_chain_tasks("chain-cancel")
        assert tasks[1].chain_status == "chain_cancelled"
        status = manager.get_status("chain-cancel")
        assert status["steps"][1]["state"] == StepState.CHAIN_CANCELLED.value

    def test_cancel_paused_chain_and_finished_chain(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path)
        result = asyncio.run(manager.start(_chain("ask the session")))
        assert result.status == ChainRunStatus.WAITING

        assert manager.cancel(result.chain_id) is True
        assert manager.get_status(result.chain_id)["status"] == "cancelled"
        assert manager.cancel(result.chain_id) is False


# ---------------------------------------------------------------------------
# Current-execution provider
# ---------------------------------------------------------------------------

class TestWaitingForData:
    def test_submit_resumes_the_chain(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path)
        definition = {
            "name": "interactive",
            "steps": [
                {"name": "draft", "prompt": "Draft a plan for $goal", "output_mapping": {"result": "plan"}},
                {"name": "review", "prompt": "Review $p", "input_mapping": {"p": "plan"}},
            ],
        }
        result = asyncio.run(manager.start(definition, initial_data={"goal": "caching"}))
        assert result.status == ChainRunStatus.WAITING
        assert result.waiting_steps == [0]
        status = manager.get_status(result.chain_id)
        assert status["steps"][0]["pending_prompt"] == "Draft a plan for caching"
        assert status["current_steps"] == [0]

        result = asyncio.run(manager.submit_step_output(result.chain_id, 0, {"result": "use an LRU"}))
        assert result.status == ChainRunStatus.WAITING
        assert result.waiting_steps == [1]
        assert manager.get_status(result.chain_id)["steps"][1]["pending_prompt"] == "Review use an LRU"

        result = asyncio.run(manager.submit_step_output(result.chain_id, 1, "looks good"))
        assert result.status == ChainRunStatus.COMPLETED
        assert result.final_data["plan"] == "use an LRU"
        assert result.step_results[1]["result"] == "looks good"

    def test_submit_to_step_not_waiting_rejected(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path)
        result = asyncio.run(manager.start(_chain("one", "two")))
        with pytest.raises(ValidationError, match="not waiting"):
            asyncio.run(manager.submit_step_output(result.chain_id, 1, {"result": "x"}))
        with pytest.raises(ValidationError, match="no step"):
            asyncio.run(manager.submit_step_output(result.chain_id, 7, {"result": "x"}))


# ---------------------------------------------------------------------------
# Retry / resume
# ---------------------------------------------------------------------------

class TestRetryAndResume:
    def test_retry_failed_step(self, tmp_path: Path) -> None:
        calls = {"boom": 0}

        def _fails_once(prompt: str, options: dict) -> str:
            if prompt == "boom":
                calls["boom"] += 1
                if calls["boom"] == 1:
                    raise RuntimeError("first try fails")
            return "ok"

        manager = _manager(tmp_path, _fails_once)
        first = asyncio.run(manager.start(_chain("fine", "boom", "after"), config={"error_strategy": "fail_fast"}))
        assert first.status == ChainRunStatus.FAILED

        second = asyncio.run(manager.retry_step(first.chain_id))
        assert second.status == ChainRunStatus.COMPLETED
        assert second.errors == []
        manual = [e for e in _events(second, ChainEventType.STEP_RETRIED, 1) if e.payload.get("manual")]
        assert len(manual) == 1
        assert second.completed_steps == 3

    def test_retry_clears_stale_failure_warnings(self, tmp_path: Path) -> None:
        calls = {"b": 0}

        def _b_fails_once(prompt: str, options: dict) -> str:
            if prompt == "b":
                calls["b"] += 1
                if calls["b"] == 1:
                    raise RuntimeError("first try fails")
            return "ok"

        manager = _manager(tmp_path, _b_fails_once)
        first = asyncio.run(manager.start(_chain("a", "b", "c"), config={"error_strategy": "continue_on_error"}))
        assert first.completed_steps == 1
        assert any("independent steps continue" in w for w in first.warnings)
        assert any("did not run" in w for w in first.warnings)

        second = asyncio.run(manager.retry_step(first.chain_id))
        assert second.status == ChainRunStatus.COMPLETED
        assert second.completed_steps == 3
        assert second.warnings == []

    def test_retry_keeps_definition_warnings(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _fail_on_boom)
        definition = {
            "name": "warned",
            "steps": [{"name": "quiet", "prompt": ""}, {"name": "loud", "prompt": "boom"}],
        }
        first = asyncio.run(manager.start(definition, config={"error_strategy": "continue_on_error"}))
        assert any("empty prompt" in w for w in first.warnings)

        second = asyncio.run(manager.retry_step(first.chain_id))
        assert any("empty prompt" in w for w in second.warnings)
        assert len([w for w in second.warnings if w.startswith("Step 1 'loud' failed")]) == 1

    def test_retry_without_failed_step(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        result = asyncio.run(manager.start(_chain("one")))
        with pytest.raises(ValidationError, match="no failed step"):
            asyncio.run(manager.retry_step(result.chain_id))

    def test_resume_interrupted_run(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        run = manager.build_run(_chain("one", "two", id="chain-resume"))
        run.status = ChainRunStatus.RUNNING
        run.steps[0].state = StepState.EXECUTING
        manager.memory.save_chain_run(run.chain_id, run.to_dict())

        fresh = _manager(tmp_path, _echo)
        result = asyncio.run(fresh.resume("chain-resume"))
        assert result.status == ChainRunStatus.COMPLETED
        assert result.completed_steps == 2

    def test_resume_finished_run_rejected(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        result = asyncio.run(manager.start(_chain("one")))
        with pytest.raises(ValidationError, match="retry_step"):
            asyncio.run(manager.resume(result.chain_id))


# ---------------------------------------------------------------------------
# Parallel execution
# ---------------------------------------------------------------------------

def _concurrency_tracker() -> tuple[dict[str, int], Any]:
    state = {"active": 0, "max": 0}

    async def _tracked(prompt: str, options: dict) -> str:
        state["active"] += 1
        state["max"] = max(state["max"], state["active"])
        await asyncio.sleep(0.05)
        state["active"] -= 1
        return prompt

    return state, _tracked


TRACKED = {
    "name": "tracks",
    "steps": [
        {"name": "left", "prompt": "left", "track": "a"},
        {"name": "right", "prompt": "right", "track": "b"},
        {"name": "join", "prompt": "join"},
    ],
}


class TestParallel:
    def test_tracks_run_concurrently_when_enabled(self, tmp_path: Path) -> None:
        state, tracked = _concurrency_tracker()
        manager = _manager(tmp_path, tracked)
        result = asyncio.run(manager.start(TRACKED, config={"enable_parallel": True}))
        assert result.status == ChainRunStatus.COMPLETED
        assert state["max"] == 2
        status = manager.get_status(result.chain_id)
        assert status["steps"][2]["parents"] == [0, 1]

    def test_sequential_by_default(self, tmp_path: Path) -> None:
        state, tracked = _concurrency_tracker()
        manager = _manager(tmp_path, tracked)
        result = asyncio.run(manager.start(TRACKED))
        assert result.status == ChainRunStatus.COMPLETED
        assert state["max"] == 1
        started = [e.step_index for e in _events(result, ChainEventType.STEP_STARTED)]
        assert started == [0, 1, 2]

    def test_storage_failure_cancels_running_steps(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        state = {"cancelled": False}

        async def _fast_or_slow(prompt: str, options: dict) -> str:
            if prompt == "right":
                try:
                    await asyncio.sleep(30)
                except asyncio.CancelledError:
                    state["cancelled"] = True
                    raise
            return prompt

        manager = _manager(tmp_path, _fast_or_slow)
        save = manager.memory.save_chain_run

        def _fail_after_first_step(chain_id: str, data: dict) -> None:
            if any(s["state"] == StepState.STEP_COMPLETED.value for s in data["steps"]):
                raise StorageError("disk full")
            save(chain_id, data)

        monkeypatch.setattr(manager.memory, "save_chain_run", _fail_after_first_step)

        async def _run() -> list[asyncio.Task]:
            with pytest.raises(StorageError, match="disk full"):
                await manager.start(TRACKED, config={"enable_parallel": True})
            return [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]

        assert asyncio.run(_run()) == []
        assert state["cancelled"] is True


# ---------------------------------------------------------------------------
# Definition validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_chain_id_must_be_a_plain_name(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path / "proj", _echo)
        report = manager.validate_definition(_chain("one", id="../../../../escaped"))
        assert report.valid is False
        assert any(e.startswith("id:") for e in report.errors)

        with pytest.raises(ValidationError, match="id: String should match pattern"):
            asyncio.run(manager.start(_chain("one", id="../../../../escaped")))
        assert not list(tmp_path.rglob("escaped.json"))

    def test_status_rejects_path_like_chain_id(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="Invalid chain id"):
            _manager(tmp_path).get_status("../memory")

    def test_valid_definition(self, tmp_path: Path) -> None:
        report = _manager(tmp_path).validate_definition(_chain("one", "two"))
        assert report.valid is True
        assert report.errors == []

    def test_structural_errors(self, tmp_path: Path) -> None:
        definition = {
            "name": "broken",
            "steps": [
                {"name": "a", "action": "teleport"},
                {"name": "b", "prompt": "x", "parents": [3]},
            ],
        }
        report = _manager(tmp_path).validate_definition(definition)
        assert report.valid is False
        assert any("unknown action 'teleport'" in e for e in report.errors)
        assert any("earlier steps" in e for e in report.errors)

    def test_schema_errors(self, tmp_path: Path) -> None:
        report = _manager(tmp_path).validate_definition({"name": "empty", "steps": []})
        assert report.valid is False
        assert report.errors[0].startswith("steps")

    def test_mapping_warnings(self, tmp_path: Path) -> None:
        definition = {
            "name": "maps",
            "steps": [
                {"name": "a", "prompt": "x", "input_mapping": {"left": "right", "right": "left"}},
                {"name": "b", "prompt": "y", "input_mapping": {"z": "unknown_key"}},
            ],
        }
        report = _manager(tmp_path).validate_definition(definition)
        assert report.valid is True
        assert any("onto each other" in w for w in report.warnings)
        assert any("unknown_key" in w for w in report.warnings)

    def test_start_rejects_invalid_and_duplicate_ids(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, _echo)
        with pytest.raises(ValidationError):
            asyncio.run(manager.start({"name": "bad", "steps": [{"name": "a", "action": "teleport"}]}))
        assert manager.engine.list_tasks() == []

        asyncio.run(manager.start(_chain("one", id="chain-fixed")))
        with pytest.raises(ValidationError, match="already in use"):
            asyncio.run(manager.start(_chain("one", id="chain-fixed")))
