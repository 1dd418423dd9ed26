"""Chain lifecycle: validate a definition, create its tasks, and drive runs.

:class:`ChainManager` is the entry point callers use.  It turns a chain
definition into a :class:`ChainRun` whose steps are backed by tasks in the
task store, hands it to :class:`ChainExecutor`, and keeps the set of runs
currently being executed so cancellation can reach them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from loguru import logger

from ..config import get_chain_config
from ..context import ProjectContext
from ..errors import ValidationError
from ..memory.store import ExecutionMemoryStore
from ..providers import ProviderRegistry
from ..schemas import ChainConfig, ChainDefinition, ChainStepSpec, parse_model
from ..task_engine.engine import TaskEngine
from ..task_engine.model import Task
from ..templates import TemplateLoader
from ..utils import _generate_id
from .actions import ActionRegistry
from .executor import ChainExecutor, EventCallback
from .model import (
    ChainExecutionConfig,
    ChainResult,
    ChainRun,
    ChainRunStatus,
    ChainStep,
    StepState,
)

DefinitionLike = Union[ChainDefinition, dict[str, Any]]


# ---------------------------------------------------------------------------
# Definition analysis
# ---------------------------------------------------------------------------

def resolve_parents(steps: list[ChainStepSpec]) -> list[list[int]]:
    """Work out each step's parent step indices.

    Explicit ``parents`` win and must point at earlier steps.  Otherwise a
    step with a ``track`` follows the previous step on the same track (or the
    last untracked step when the track is new); an untracked step joins every
    open track, or follows the step right before it when no track is open.
    """
    parents: list[list[int]] = []
    open_tracks: dict[str, int] = {}
    last_untracked: Optional[int] = None

    for i, spec in enumerate(steps):
        if spec.parents is not None:
            bad = [p for p in spec.parents if not 0 <= p < i]
            if bad:
                raise ValidationError(
                    f"Step {i} '{spec.name}' lists parents {bad}; parents must be earlier steps"
                )
            resolved = sorted(set(spec.parents))
        elif spec.track:
            if spec.track in open_tracks:
                resolved = [open_tracks[spec.track]]
            else:
                resolved = [last_untracked] if last_untracked is not None else []
        elif open_tracks:
            resolved = sorted(open_tracks.values())
        else:
            resolved = [i - 1] if i > 0 else []

        parents.append(resolved)
        if spec.track:
            open_tracks[spec.track] = i
        else:
            open_tracks = {}
            last_untracked = i
    return parents


@dataclass
class ChainValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class ChainManager:
    """Start, inspect, cancel, retry, and resume task chains for one project."""

    def __init__(
        self,
        ctx: ProjectContext,
        engine: Optional[TaskEngine] = None,
        memory: Optional[ExecutionMemoryStore] = None,
        providers: Optional[ProviderRegistry] = None,
        actions: Optional[ActionRegistry] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.ctx = ctx
        self.engine = engine or TaskEngine(ctx.state_dir)
        self.memory = memory or ExecutionMemoryStore(ctx.memory_dir)
        self.actions = actions or ActionRegistry()
        self.templates = TemplateLoader(ctx.state_dir)
        self.executor = ChainExecutor(
            self.engine,
            self.memory,
            providers=providers,
            actions=self.actions,
            templates=self.templates,
            on_event=on_event,
        )
        self._active: dict[str, ChainRun] = {}

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def validate_definition(
        self,
        definition: DefinitionLike,
        initial_data: Optional[dict[str, Any]] = None,
    ) -> ChainValidation:
        """Check a chain definition without creating anything.

        Structural problems (schema, unknown actions, bad parents, an id that
        is already taken) are errors.  Mapping problems that may only show up
        at run time are warnings.
        """
        try:
            chain = definition if isinstance(definition, ChainDefinition) else parse_model(ChainDefinition, definition)
        except ValidationError as exc:
            return ChainValidation(False, errors=list(exc.errors) or [str(exc)])

        result = ChainValidation(True)
        if chain.id and chain.id in self.memory.list_chain_runs():
            result.errors.append(f"Chain id '{chain.id}' is already in use")

        for i, spec in enumerate(chain.steps):
            if not self.actions.has(spec.action):
                result.errors.append(f"Step {i} '{spec.name}' uses unknown action '{spec.action}'")
            if spec.action == "prompt" and not spec.prompt.strip():
                result.warnings.append(f"Step {i} '{spec.name}' has an empty prompt")
        try:
            resolve_parents(chain.steps)
        except ValidationError as exc:
            result.errors.append(str(exc))

        seen_names: set[str] = set()
        known = set(initial_data or {}) | {"result", "step_index"}
        for i, spec in enumerate(chain.steps):
            if spec.name in seen_names:
                result.warnings.append(f"Step {i} reuses the step name '{spec.name}'")
            seen_names.add(spec.name)
            for target, source in spec.input_mapping.items():
                if spec.input_mapping.get(source) == target and source != target:
                    result.warnings.append(
                        f"Step {i} '{spec.name}' maps '{target}' and '{source}' onto each other"
                    )
                if source not in known:
                    result.warnings.append(
                        f"Step {i} '{spec.name}' reads '{source}' which no earlier step is known to produce"
                    )
            known.update(spec.input_mapping)
            known.update(spec.output_mapping.values())

        result.valid = not result.errors
        return result

    def _resolve_config(
        self,
        chain: ChainDefinition,
        config: Optional[dict[str, Any]] = None,
    ) -> ChainExecutionConfig:
        merged = get_chain_config(self.ctx.config)
        if chain.config is not None:
            merged.update(chain.config.model_dump(exclude_unset=True))
        if config:
            merged.update(config)
        return ChainExecutionConfig.from_dict(parse_model(ChainConfig, merged).model_dump())

    def build_run(
        self,
        definition: DefinitionLike,
        initial_data: Optional[dict[str, Any]] = None,
        config: Optional[dict[str, Any]] = None,
    ) -> ChainRun:
        """Validate *definition*, create one task per step, and persist a pending run."""
        chain = definition if isinstance(definition, ChainDefinition) else parse_model(ChainDefinition, definition)
        report = self.validate_definition(chain, initial_data)
        if not report.valid:
            raise ValidationError(
                "Invalid chain definition: " + "; ".join(report.errors), errors=report.errors
            )
        for warning in report.warnings:
            logger.warning("Chain '{}': {}", chain.name, warning)

        chain_id = chain.id or _generate_id("chain")
        parents = resolve_parents(chain.steps)
        tasks = [
            Task(
                name=spec.name,
                description=spec.description or f"Step {i + 1} of chain '{chain.name}'",
                chain_id=chain_id,
                step_index=i,
                chain_status=StepState.WAITING_FOR_PARENT.value,
            )
            for i, spec in enumerate(chain.steps)
        ]
        for i, task in enumerate(tasks):
            task.dependencies = [tasks[p].id for p in parents[i]]
            task.parent_step_id = tasks[parents[i][-1]].id if parents[i] else None
            task.child_step_ids = [tasks[j].id for j in range(len(tasks)) if i in parents[j]]
        self.engine.bulk_create(tasks)

        steps = [
            ChainStep(
                index=i,
                name=spec.name,
                task_id=tasks[i].id,
                action=spec.action,
                prompt=spec.prompt,
                input_mapping=dict(spec.input_mapping),
                output_mapping=dict(spec.output_mapping),
                track=spec.track,
                parents=parents[i],
                timeout_seconds=spec.timeout_seconds,
                max_retries=spec.max_retries,
                options=dict(spec.options),
            )
            for i, spec in enumerate(chain.steps)
        ]
        run = ChainRun(
            chain_id=chain_id,
            name=chain.name,
            description=chain.description,
            steps=steps,
            config=self._resolve_config(chain, config),
            data=dict(initial_data or {}),
            warnings=list(report.warnings),
        )
        self.memory.save_chain_run(chain_id, run.to_dict())
        logger.info("Created chain {} '{}' with {} steps", chain_id, chain.name, len(steps))
        return run

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _load_run(self, chain_id: str) -> ChainRun:
        run = self._active.get(chain_id)
        if run is not None:
            return run
        return ChainRun.from_dict(self.memory.load_chain_run(chain_id))

    def _ensure_idle(self, chain_id: str) -> None:
        if chain_id in self._active:
            raise ValidationError(f"Chain {chain_id} is already executing")

    async def _drive(self, run: ChainRun, operation: Any) -> ChainResult:
        self._active[run.chain_id] = run
        try:
            await operation
        finally:
            self._active.pop(run.chain_id, None)
        return run.to_result()

    async def start(
        self,
        definition: DefinitionLike,
        initial_data: Optional[dict[str, Any]] = None,
        config: Optional[dict[str, Any]] = None,
    ) -> ChainResult:
        """Create a chain and execute it until it finishes or pauses."""
        run = self.build_run(definition, initial_data, config)
        return await self._drive(run, self.executor.execute(run))

    def get_status(self, chain_id: str) -> dict[str, Any]:
        run = self._load_run(chain_id)
        return {
            "chain_id": run.chain_id,
            "name": run.name,
            "status": run.status.value,
            "active": chain_id in self._active,
            "progress": {
                "completed": run.completed_steps,
                "total": len(run.steps),
                "percentage": round(run.progress * 100, 1),
            },
            "current_steps": [
                s.index
                for s in run.steps
                if s.state in (StepState.EXECUTING, StepState.WAITING_FOR_DATA, StepState.DATA_PROCESSING)
            ],
            "steps": [
                {
                    "index": s.index,
                    "name": s.name,
                    "task_id": s.task_id,
                    "state": s.state.value,
                    "track": s.track,
                    "parents": list(s.parents),
                    "attempts": s.attempts,
                    "error": s.error,
                    "pending_prompt": s.pending_prompt,
                }
                for s in run.steps
            ],
            "errors": list(run.errors),
            "warnings": list(run.warnings),
            "data_keys": sorted(run.data),
            "recent_events": [e.to_dict() for e in run.events[-10:]],
            "tasks": self.engine.get_chain_progress(chain_id),
            "execution_id": run.execution_id,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
        }

    def list_chains(self) -> list[dict[str, Any]]:
        out = []
        for chain_id in self.memory.list_chain_runs():
            run = self._load_run(chain_id)
            out.append(
                {
                    "chain_id": run.chain_id,
                    "name": run.name,
                    "status": run.status.value,
                    "completed_steps": run.completed_steps,
                    "total_steps": len(run.steps),
                }
            )
        return out

    def cancel(self, chain_id: str) -> bool:
        """Request cancellation.  Returns False when the chain already finished."""
        run = self._active.get(chain_id)
        if run is not None:
            run.cancel_requested = True
            logger.info("Cancellation requested for chain {}", chain_id)
            return True
        run = self._load_run(chain_id)
        if run.status.is_terminal:
            return False
        self.executor.cancel_inactive(run)
        return True

    async def retry_step(self, chain_id: str, step_index: Optional[int] = None) -> ChainResult:
        """Reset a failed step and continue the chain from there."""
        self._ensure_idle(chain_id)
        run = self._load_run(chain_id)
        if run.status == ChainRunStatus.CANCELLED:
            raise ValidationError(f"Chain {chain_id} was cancelled and cannot be retried")
        return await self._drive(run, self.executor.retry_step(run, step_index))

    async def submit_step_output(self, chain_id: str, step_index: int, data: Any) -> ChainResult:
        """Provide the output of a step that is waiting on the current session."""
        self._ensure_idle(chain_id)
        run = self._load_run(chain_id)
        return await self._drive(run, self.executor.submit_step_output(run, step_index, data))

    async def resume(self, chain_id: str) -> ChainResult:
        """Continue a run that was interrupted or is paused waiting for data."""
        self._ensure_idle(chain_id)
        run = self._load_run(chain_id)
        if run.status.is_terminal:
            raise ValidationError(
                f"Chain {chain_id} already {run.status.value}; use retry_step for failed steps"
            )
        return await self._drive(run, self.executor.execute(run))

