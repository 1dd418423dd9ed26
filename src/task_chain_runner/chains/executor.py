"""Chain execution engine: drives a :class:`ChainRun` through its step states.

The engine:
1. Promotes steps whose parents all completed to READY_TO_EXECUTE
2. Launches ready steps (all of them when parallel execution is enabled,
   otherwise the lowest-index one) as asyncio tasks
3. Applies the per-step timeout and the run's error strategy to each outcome
4. Merges step output into the shared chain data and writes every transition
   back to the task store and the execution memory store

The ``execute()`` method is async so provider calls never block unrelated steps.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger

from ..errors import ChainError, ChainErrorKind, ValidationError
from ..logging_utils import format_chain_event
from ..memory.model import ExecutionStatus, StepStatus
from ..memory.store import ExecutionMemoryStore
from ..providers import ProviderRegistry
from ..task_engine.engine import TaskEngine
from ..task_engine.model import TaskStatus
from ..templates import TemplateLoader
from ..utils import _now_iso
from .actions import ActionRegistry, StepInput, StepOutput
from .model import (
    ChainEvent,
    ChainEventType,
    ChainRun,
    ChainRunStatus,
    ChainStep,
    ErrorStrategy,
    StepState,
)

EventCallback = Callable[[ChainEvent], Any]


# ---------------------------------------------------------------------------
# Data mapping
# ---------------------------------------------------------------------------

def apply_input_mapping(data: dict[str, Any], mapping: dict[str, str], step: ChainStep) -> dict[str, Any]:
    """Return *data* plus ``{target: data[source]}`` for each ``target <- source`` pair."""
    if not mapping:
        return dict(data)
    mapped = dict(data)
    for target, source in mapping.items():
        if source not in data:
            raise ChainError(
                ChainErrorKind.DATA_MAPPING_ERROR,
                f"Step '{step.name}' input mapping expects '{source}' which is not in the chain data",
                step_index=step.index,
                task_id=step.task_id,
                recoverable=False,
            )
        mapped[target] = data[source]
    return mapped


def apply_output_mapping(data: dict[str, Any], mapping: dict[str, str], step: ChainStep) -> dict[str, Any]:
    """Return *data* plus ``{target: data[source]}`` for each ``source -> target`` pair."""
    if not mapping:
        return dict(data)
    mapped = dict(data)
    for source, target in mapping.items():
        if source not in data:
            raise ChainError(
                ChainErrorKind.DATA_MAPPING_ERROR,
                f"Step '{step.name}' output mapping expects '{source}' which the step did not produce",
                step_index=step.index,
                task_id=step.task_id,
                recoverable=False,
            )
        mapped[target] = data[source]
    return mapped


def _with_descendants(run: ChainRun, index: int) -> list[ChainStep]:
    found: dict[int, ChainStep] = {}
    pending = [run.step(index)]
    while pending:
        step = pending.pop()
        if step.index in found:
            continue
        found[step.index] = step
        pending.extend(run.children_of(step.index))
    return [found[i] for i in sorted(found)]


def _drop_run_warnings(run: ChainRun, steps: list[ChainStep]) -> None:
    """Forget failure and did-not-run warnings recorded for *steps* by an earlier pass."""
    prefixes = tuple(
        f"Step {s.index} '{s.name}' {marker}" for s in steps for marker in ("failed", "did not run")
    )
    run.warnings = [w for w in run.warnings if not w.startswith(prefixes)]


@dataclass
class _Outcome:
    output: Optional[StepOutput] = None
    error: Optional[ChainError] = None
    duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ChainExecutor:
    """Run chain steps according to their dependencies and the error strategy."""

    def __init__(
        self,
        engine: TaskEngine,
        memory: ExecutionMemoryStore,
        providers: Optional[ProviderRegistry] = None,
        actions: Optional[ActionRegistry] = None,
        templates: Optional[TemplateLoader] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.engine = engine
        self.memory = memory
        self.providers = providers or ProviderRegistry()
        self.actions = actions or ActionRegistry()
        self.templates = templates or TemplateLoader()
        self._on_event = on_event

    # ------------------------------------------------------------------
    # Events / persistence
    # ------------------------------------------------------------------

    def _emit(
        self,
        run: ChainRun,
        event_type: ChainEventType,
        step: Optional[ChainStep] = None,
        **payload: Any,
    ) -> ChainEvent:
        event = ChainEvent(
            event_type=event_type,
            chain_id=run.chain_id,
            step_index=step.index if step else None,
            task_id=step.task_id if step else None,
            payload=payload,
        )
        run.events.append(event)
        logger.debug("{}", format_chain_event(event))
        if self._on_event:
            try:
                self._on_event(event)
            except Exception:
                logger.exception("Chain event callback failed for {}", event_type.value)
        return event

    def _persist(self, run: ChainRun) -> None:
        self.memory.save_chain_run(run.chain_id, run.to_dict())

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def execute(self, run: ChainRun) -> ChainRun:
        """Run every reachable step until the chain completes, fails, pauses, or is cancelled."""
        if run.status.is_terminal:
            return run
        loop = asyncio.get_running_loop()

        if run.status == ChainRunStatus.PENDING:
            run.started_at = run.started_at or _now_iso()
            self._emit(
                run,
                ChainEventType.CHAIN_STARTED,
                total_steps=len(run.steps),
                error_strategy=run.config.error_strategy.value,
                parallel=run.config.enable_parallel,
            )
        run.status = ChainRunStatus.RUNNING
        if run.execution_id is None:
            run.execution_id = self.memory.start_execution(run.steps[0].task_id, chain_id=run.chain_id)
        # Steps caught mid-flight by an interruption start over.
        for step in run.steps:
            if step.state == StepState.EXECUTING:
                step.state = StepState.READY_TO_EXECUTE
            elif step.state == StepState.DATA_PROCESSING:
                step.state = StepState.WAITING_FOR_DATA
        self._persist(run)

        deadline = loop.time() + run.config.total_timeout_seconds
        in_flight: dict[asyncio.Future, ChainStep] = {}
        timed_out = False

        try:
            while True:
                self._promote_ready(run)
                if not run.errors and not run.cancel_requested:
                    for step in self._select(run, len(in_flight)):
                        self._mark_executing(step)
                        in_flight[asyncio.ensure_future(self._run_step(run, step))] = step
                if not in_flight:
                    break

                remaining = deadline - loop.time()
                done: set[asyncio.Future] = set()
                if remaining > 0:
                    done, _ = await asyncio.wait(
                        set(in_flight), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                    )
                if not done:
                    timed_out = True
                    await self._abort(run, in_flight)
                    break

                for fut in done:
                    step = in_flight.pop(fut)
                    self._apply_outcome(run, step, fut.result())
                self._persist(run)
        finally:
            if in_flight:
                # only reached with futures left when an exception escaped the loop
                for fut in in_flight:
                    fut.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)

        return self._finish(run, timed_out=timed_out)

    def _promote_ready(self, run: ChainRun) -> None:
        for step in run.steps:
            if step.state != StepState.WAITING_FOR_PARENT:
                continue
            if all(run.step(p).state == StepState.STEP_COMPLETED for p in step.parents):
                step.state = StepState.READY_TO_EXECUTE
                self.engine.apply_step_state(step.task_id, step.state.value)

    @staticmethod
    def _select(run: ChainRun, in_flight: int) -> list[ChainStep]:
        ready = [s for s in run.steps if s.state == StepState.READY_TO_EXECUTE]
        if run.config.enable_parallel:
            return ready
        if in_flight:
            return []
        return ready[:1]

    def _mark_executing(self, step: ChainStep) -> None:
        step.state = StepState.EXECUTING
        step.started_at = _now_iso()
        self.engine.apply_step_state(step.task_id, step.state.value, status=TaskStatus.IN_PROGRESS)

    async def _abort(self, run: ChainRun, in_flight: dict[asyncio.Future, ChainStep]) -> None:
        for fut in in_flight:
            fut.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        for step in in_flight.values():
            error = ChainError(
                ChainErrorKind.TIMEOUT_ERROR,
                f"Step '{step.name}' aborted: chain exceeded its total timeout",
                step_index=step.index,
                task_id=step.task_id,
                recoverable=False,
            )
            step.state = StepState.CHAIN_FAILED
            step.error = error.to_dict()
            step.finished_at = _now_iso()
            self.engine.apply_step_state(step.task_id, step.state.value, status=TaskStatus.BLOCKED)
        in_flight.clear()

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    async def _run_step(self, run: ChainRun, step: ChainStep) -> _Outcome:
        strategy = run.config.error_strategy
        retries = step.max_retries if step.max_retries is not None else run.config.max_retries
        allowed = 1 + retries if strategy == ErrorStrategy.RETRY_ON_ERROR else 1
        timeout = step.timeout_seconds or run.config.step_timeout_seconds
        started = time.monotonic()
        error: Optional[ChainError] = None

        for attempt in range(1, allowed + 1):
            step.attempts += 1
            self._emit(run, ChainEventType.STEP_STARTED, step, attempt=attempt)
            try:
                output = await asyncio.wait_for(self._invoke(run, step, attempt), timeout=timeout)
                return _Outcome(output=output, duration_ms=(time.monotonic() - started) * 1000)
            except asyncio.TimeoutError:
                error = ChainError(
                    ChainErrorKind.TIMEOUT_ERROR,
                    f"Step '{step.name}' timed out after {timeout}s",
                    step_index=step.index,
                    task_id=step.task_id,
                )
                self._emit(run, ChainEventType.TIMEOUT_ERROR, step, attempt=attempt, timeout_seconds=timeout)
            except ChainError as exc:
                error = exc
            except Exception as exc:
                error = ChainError(
                    ChainErrorKind.STEP_EXECUTION_FAILED,
                    f"{exc.__class__.__name__}: {exc}",
                    step_index=step.index,
                    task_id=step.task_id,
                )
            logger.warning("Chain {} step {} attempt {} failed: {}", run.chain_id, step.index, attempt, error.message)

            if attempt < allowed and error.recoverable and not run.cancel_requested:
                self._emit(
                    run,
                    ChainEventType.STEP_RETRIED,
                    step,
                    attempt=attempt,
                    next_attempt=attempt + 1,
                    error=error.message,
                )
                continue
            break

        return _Outcome(error=error, duration_ms=(time.monotonic() - started) * 1000)

    async def _invoke(self, run: ChainRun, step: ChainStep, attempt: int) -> StepOutput:
        if not self.actions.has(step.action):
            raise ChainError(
                ChainErrorKind.VALIDATION_ERROR,
                f"Step '{step.name}' uses unknown action '{step.action}'",
                step_index=step.index,
                task_id=step.task_id,
                recoverable=False,
            )
        action = self.actions.get(step.action)
        step_input = StepInput(
            chain_id=run.chain_id,
            step_index=step.index,
            step_name=step.name,
            task_id=step.task_id,
            prompt=step.prompt,
            data=apply_input_mapping(run.data, step.input_mapping, step),
            options=dict(step.options),
            attempt=attempt,
        )
        return await action.invoke(step_input, self.providers)

    def _apply_outcome(self, run: ChainRun, step: ChainStep, outcome: _Outcome) -> None:
        if outcome.error is not None:
            self._fail_step(run, step, outcome.error, outcome.duration_ms)
            return

        output = outcome.output
        if output.needs_current_execution:
            step.state = StepState.WAITING_FOR_DATA
            step.pending_prompt = output.content
            self.engine.apply_step_state(step.task_id, step.state.value)
            logger.info("Chain {} step {} waits for output from the current session", run.chain_id, step.index)
            return
        try:
            self._complete_step(run, step, output.data, outcome.duration_ms)
        except ChainError as exc:
            self._fail_step(run, step, exc, outcome.duration_ms)

    def _complete_step(
        self,
        run: ChainRun,
        step: ChainStep,
        data: dict[str, Any],
        duration_ms: Optional[float] = None,
    ) -> None:
        mapped = apply_output_mapping(data, step.output_mapping, step)
        run.data.update(mapped)
        step.output = mapped
        step.error = None
        step.pending_prompt = None
        step.state = StepState.STEP_COMPLETED
        step.finished_at = _now_iso()

        self._emit(run, ChainEventType.STEP_COMPLETED, step, keys=sorted(mapped), attempts=step.attempts)
        for child in run.children_of(step.index):
            self._emit(
                run,
                ChainEventType.DATA_PASSED,
                step,
                to_step=child.index,
                to_task_id=child.task_id,
                keys=sorted(run.data),
            )
        self.engine.apply_step_state(
            step.task_id,
            step.state.value,
            status=TaskStatus.COMPLETED,
            chain_data=mapped,
            summary=f"Chain step '{step.name}' completed",
        )
        self.memory.record_step(
            run.execution_id,
            action=f"chain_step:{step.name}",
            description=f"Step {step.index} of chain {run.chain_id}",
            status=StepStatus.COMPLETED,
            output=mapped,
            duration_ms=duration_ms,
            resources=[step.task_id],
            metadata={"step_index": step.index, "attempts": step.attempts},
        )

    def _fail_step(self, run: ChainRun, step: ChainStep, error: ChainError, duration_ms: float) -> None:
        step.error = error.to_dict()
        step.finished_at = _now_iso()
        self._emit(
            run,
            ChainEventType.STEP_FAILED,
            step,
            error_type=error.kind.value,
            message=error.message,
            attempts=step.attempts,
        )
        strategy = run.config.error_strategy

        if strategy == ErrorStrategy.SKIP_ON_ERROR:
            run.warnings.append(f"Step {step.index} '{step.name}' failed and was skipped: {error.message}")
            step.output = {}
            step.state = StepState.STEP_COMPLETED
            self._emit(run, ChainEventType.STEP_COMPLETED, step, skipped=True, attempts=step.attempts)
            for child in run.children_of(step.index):
                self._emit(run, ChainEventType.DATA_PASSED, step, to_step=child.index, to_task_id=child.task_id, keys=[])
            self.engine.apply_step_state(
                step.task_id,
                step.state.value,
                status=TaskStatus.COMPLETED,
                chain_data={},
                summary=f"Skipped after error: {error.message}",
            )
            self.memory.record_step(
                run.execution_id,
                action=f"chain_step:{step.name}",
                description=f"Step {step.index} skipped after error",
                status=StepStatus.SKIPPED,
                duration_ms=duration_ms,
                resources=[step.task_id],
                metadata={"step_index": step.index, "error": step.error},
            )
            return

        step.state = StepState.CHAIN_FAILED
        self.engine.apply_step_state(step.task_id, step.state.value, status=TaskStatus.BLOCKED)
        self.memory.record_step(
            run.execution_id,
            action=f"chain_step:{step.name}",
            description=f"Step {step.index} failed",
            status=StepStatus.FAILED,
            output={"error": error.message},
            duration_ms=duration_ms,
            resources=[step.task_id],
            metadata={"step_index": step.index, "error": step.error, "attempts": step.attempts},
        )
        if strategy == ErrorStrategy.CONTINUE_ON_ERROR:
            run.warnings.append(
                f"Step {step.index} '{step.name}' failed: {error.message}; independent steps continue"
            )
            return
        run.errors.append(step.error)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _finish(self, run: ChainRun, timed_out: bool = False) -> ChainRun:
        waiting = [s.index for s in run.steps if s.state == StepState.WAITING_FOR_DATA]
        if timed_out:
            error = ChainError(
                ChainErrorKind.TIMEOUT_ERROR,
                f"Chain exceeded its total timeout of {run.config.total_timeout_seconds}s",
                recoverable=False,
            )
            run.errors.append(error.to_dict())
            self._emit(run, ChainEventType.TIMEOUT_ERROR, total_timeout_seconds=run.config.total_timeout_seconds)
            status = ChainRunStatus.FAILED
        elif run.cancel_requested:
            status = ChainRunStatus.CANCELLED
        elif run.errors:
            status = ChainRunStatus.FAILED
        elif waiting:
            run.status = ChainRunStatus.WAITING
            self._persist(run)
            logger.info("Chain {} paused; waiting for output of steps {}", run.chain_id, waiting)
            return run
        else:
            status = ChainRunStatus.COMPLETED
            for step in run.steps:
                if not step.state.is_terminal:
                    run.warnings.append(f"Step {step.index} '{step.name}' did not run: a parent step failed")

        run.status = status
        run.finished_at = _now_iso()
        if status == ChainRunStatus.CANCELLED:
            for step in run.steps:
                if not step.state.is_terminal:
                    step.state = StepState.CHAIN_CANCELLED
            self.engine.cancel_chain_tasks(run.chain_id)
            self._emit(run, ChainEventType.CHAIN_CANCELLED, completed_steps=run.completed_steps)
        elif status == ChainRunStatus.FAILED:
            self._emit(run, ChainEventType.CHAIN_FAILED, errors=len(run.errors), completed_steps=run.completed_steps)
        else:
            self._emit(
                run,
                ChainEventType.CHAIN_COMPLETED,
                completed_steps=run.completed_steps,
                warnings=len(run.warnings),
            )

        summary = self.templates.render(
            "chain_summary",
            chain_name=run.name,
            chain_id=run.chain_id,
            status=status.value,
            completed_steps=run.completed_steps,
            total_steps=len(run.steps),
            error_count=len(run.errors),
            warning_count=len(run.warnings),
        )
        if run.execution_id is not None:
            final = ExecutionStatus.COMPLETED if status == ChainRunStatus.COMPLETED else ExecutionStatus.FAILED
            self.memory.end_execution(run.execution_id, final, summary=summary)
        self._persist(run)
        logger.info("{}", summary)
        return run

    # ------------------------------------------------------------------
    # External transitions
    # ------------------------------------------------------------------

    def cancel_inactive(self, run: ChainRun) -> ChainRun:
        """Cancel a run that is not being executed by any coroutine."""
        run.cancel_requested = True
        return self._finish(run)

    async def submit_step_output(self, run: ChainRun, step_index: int, data: Any) -> ChainRun:
        """Feed the output of a WAITING_FOR_DATA step back in and continue the run."""
        if run.status != ChainRunStatus.WAITING:
            raise ValidationError(f"Chain {run.chain_id} is {run.status.value}, not waiting for data")
        if not 0 <= step_index < len(run.steps):
            raise ValidationError(f"Chain {run.chain_id} has no step {step_index}")
        step = run.step(step_index)
        if step.state != StepState.WAITING_FOR_DATA:
            raise ValidationError(f"Step {step_index} is {step.state.value}, not waiting for data")

        payload = dict(data) if isinstance(data, dict) else {"result": data}
        payload.setdefault("step_index", step.index)
        step.state = StepState.DATA_PROCESSING
        self.engine.apply_step_state(step.task_id, step.state.value)
        try:
            self._complete_step(run, step, payload)
        except ChainError as exc:
            self._fail_step(run, step, exc, 0.0)
        return await self.execute(run)

    async def retry_step(self, run: ChainRun, step_index: Optional[int] = None) -> ChainRun:
        """Reset a failed step (the first failed one by default) and run the chain again."""
        if step_index is None:
            failed = [s for s in run.steps if s.state == StepState.CHAIN_FAILED]
            if not failed:
                raise ValidationError(f"Chain {run.chain_id} has no failed step to retry")
            step = failed[0]
        else:
            if not 0 <= step_index < len(run.steps):
                raise ValidationError(f"Chain {run.chain_id} has no step {step_index}")
            step = run.step(step_index)
            if step.state != StepState.CHAIN_FAILED:
                raise ValidationError(f"Step {step_index} is {step.state.value}; only failed steps can be retried")

        step.state = StepState.WAITING_FOR_PARENT
        step.error = None
        step.output = None
        step.attempts = 0
        step.finished_at = None
        run.errors = [
            e for e in run.errors if e.get("step_index") not in (step.index, None)
        ]
        _drop_run_warnings(run, _with_descendants(run, step.index))
        self.engine.apply_step_state(step.task_id, step.state.value, status=TaskStatus.PENDING)
        self._emit(run, ChainEventType.STEP_RETRIED, step, manual=True)

        if run.status.is_terminal:
            run.status = ChainRunStatus.RUNNING
            run.finished_at = None
            run.execution_id = None
        return await self.execute(run)
