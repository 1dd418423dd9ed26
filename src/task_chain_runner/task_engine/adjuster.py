"""Dynamic task insertion and plan re-balancing.

The adjuster inserts a new task into an existing plan relative to an anchor
task, rewires neighbouring dependency edges in the same store transaction,
and records why the plan changed as a decision in execution memory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..constants import (
    APPEND_CONFIDENCE,
    AUTO_APPLY_CONFIDENCE,
    HEURISTIC_MAX_CONFIDENCE,
    HEURISTIC_MIN_CONFIDENCE,
    HEURISTIC_TIE_PENALTY,
)
from ..errors import AnchorNotFoundError, ValidationError
from ..memory.model import DecisionOption, DiscoveryCategory, ExecutionStatus, Relevance
from ..memory.store import ExecutionMemoryStore
from ..schemas import TaskInsertionRequest, parse_model
from ..templates import TemplateLoader
from . import graph
from .engine import TaskEngine, _coerce_urgency
from .model import Task
from .store import _TaskTx

STRATEGY_INSERT_AFTER = "insert_after"
STRATEGY_INSERT_BEFORE = "insert_before"
STRATEGY_HEURISTIC = "heuristic_anchor"
STRATEGY_APPEND = "append"

_STRATEGY_OPTIONS = (
    DecisionOption(
        option_id=STRATEGY_INSERT_AFTER,
        description="Run after the anchor; the anchor's dependents wait for the new task",
        pros=["Preserves downstream ordering"],
        cons=["Delays every dependent of the anchor"],
        risk_level="low",
    ),
    DecisionOption(
        option_id=STRATEGY_INSERT_BEFORE,
        description="Run before the anchor; the new task takes over the anchor's prerequisites",
        pros=["Anchor cannot start until the new work is done"],
        cons=["Delays the anchor itself"],
        risk_level="low",
    ),
    DecisionOption(
        option_id=STRATEGY_HEURISTIC,
        description="Follow the most urgent open task that nothing else waits on",
        pros=["No rewiring of existing edges"],
        cons=["Placement is a guess when several candidates tie"],
        risk_level="medium",
    ),
    DecisionOption(
        option_id=STRATEGY_APPEND,
        description="Append with no dependencies",
        pros=["Never blocks existing work"],
        cons=["No ordering relative to the current plan"],
        risk_level="medium",
    ),
)

_RELEVANCE_CONFIDENCE = {
    Relevance.HIGH: 0.9,
    Relevance.MEDIUM: 0.6,
    Relevance.LOW: 0.4,
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class AdjustmentImpact:
    time_change_hours: float = 0.0
    risk_change: str = "none"  # none | low | medium | high
    affected_tasks: list[str] = field(default_factory=list)


@dataclass
class AdjustmentSuggestion:
    task_id: str
    adjustment_type: str  # dependency | approach | notes
    current_value: Any
    suggested_value: Any
    reasoning: str
    confidence: float
    impact: AdjustmentImpact = field(default_factory=AdjustmentImpact)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "adjustment_type": self.adjustment_type,
            "current_value": self.current_value,
            "suggested_value": self.suggested_value,
            "reasoning": self.reasoning,
            "confidence": round(self.confidence, 2),
            "impact": {
                "time_change_hours": self.impact.time_change_hours,
                "risk_change": self.impact.risk_change,
                "affected_tasks": list(self.impact.affected_tasks),
            },
        }


@dataclass
class DynamicAdjustmentResult:
    success: bool
    inserted_task: Optional[Task] = None
    adjusted_tasks: list[Task] = field(default_factory=list)
    suggestions: list[AdjustmentSuggestion] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    summary: str = ""
    strategy: Optional[str] = None
    execution_id: Optional[str] = None
    decision_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "inserted_task": self.inserted_task.to_dict() if self.inserted_task else None,
            "adjusted_tasks": [t.to_dict() for t in self.adjusted_tasks],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "warnings": list(self.warnings),
            "summary": self.summary,
            "strategy": self.strategy,
            "execution_id": self.execution_id,
            "decision_id": self.decision_id,
        }


@dataclass
class ContextAdjustmentResult:
    execution_id: str
    suggestions: list[AdjustmentSuggestion] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "applied": list(self.applied),
            "summary": self.summary,
        }


@dataclass
class ConflictReport:
    cycles: list[list[str]] = field(default_factory=list)
    missing_references: list[str] = field(default_factory=list)
    proposed_dependencies: dict[str, list[str]] = field(default_factory=dict)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.cycles or self.missing_references)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_conflicts": self.has_conflicts,
            "cycles": [list(c) for c in self.cycles],
            "missing_references": list(self.missing_references),
            "proposed_dependencies": {k: list(v) for k, v in self.proposed_dependencies.items()},
        }


# ---------------------------------------------------------------------------
# Anchor selection
# ---------------------------------------------------------------------------

@dataclass
class _Placement:
    strategy: str
    anchor_id: Optional[str]
    dependencies: list[str]
    confidence: float
    reasoning: str


def choose_heuristic_anchor(tasks: list[Task]) -> _Placement:
    """Pick where an un-anchored task should go.

    Candidates are incomplete tasks that no other incomplete task depends on
    (the current frontier of the plan).  The most urgent, then highest
    priority candidate wins.  Confidence drops by a fixed step for every
    candidate that ties with the winner.  Without candidates the task is
    appended with no dependencies.
    """
    has_open_dependent: set[str] = set()
    for t in tasks:
        if t.is_completed:
            continue
        for dep_id in t.dependencies:
            has_open_dependent.add(dep_id)

    candidates = [t for t in tasks if not t.is_completed and t.id not in has_open_dependent]
    if not candidates:
        return _Placement(
            strategy=STRATEGY_APPEND,
            anchor_id=None,
            dependencies=[],
            confidence=APPEND_CONFIDENCE,
            reasoning="No open task to follow; appended to the end of the plan",
        )

    best_rank = max(t.rank for t in candidates)
    tied = [t for t in candidates if t.rank == best_rank]
    # Earliest created wins among equals so the choice is stable.
    anchor = min(tied, key=lambda t: (t.created_at, t.id))
    confidence = max(
        HEURISTIC_MIN_CONFIDENCE,
        HEURISTIC_MAX_CONFIDENCE - HEURISTIC_TIE_PENALTY * (len(tied) - 1),
    )
    urgency = anchor.urgency.value if anchor.urgency else "unset"
    return _Placement(
        strategy=STRATEGY_HEURISTIC,
        anchor_id=anchor.id,
        dependencies=[anchor.id],
        confidence=confidence,
        reasoning=(
            f"Placed after '{anchor.name}' (urgency {urgency}, priority {anchor.rank[1]}); "
            f"{len(tied)} candidate(s) tied at the top"
        ),
    )


# ---------------------------------------------------------------------------
# Adjuster
# ---------------------------------------------------------------------------

class DynamicTaskAdjuster:
    """Insert tasks into a live plan without breaking its ordering guarantees."""

    def __init__(
        self,
        engine: TaskEngine,
        memory: ExecutionMemoryStore,
        templates: Optional[TemplateLoader] = None,
    ) -> None:
        self.engine = engine
        self.memory = memory
        self.templates = templates or TemplateLoader()

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def insert_task_intelligently(self, request: Any) -> DynamicAdjustmentResult:
        """Insert a task described by *request* (a dict or :class:`TaskInsertionRequest`).

        Raises :class:`ValidationError` for malformed input and
        :class:`AnchorNotFoundError` when an explicit anchor does not exist; in
        both cases nothing is written.  A cycle in the resulting graph rolls the
        insertion back and is reported through ``success=False``.
        """
        req = parse_model(TaskInsertionRequest, request)
        warnings: list[str] = []
        if req.insert_after and req.insert_before:
            warnings.append(
                f"Both insert_after ({req.insert_after}) and insert_before ({req.insert_before}) "
                "given; using insert_after"
            )
        if req.execution_id:
            # Fail before mutating anything if the context cannot take the decision.
            ctx = self.memory.get_context(req.execution_id)
            if ctx.status != ExecutionStatus.RUNNING:
                raise ValidationError(f"Execution {req.execution_id} is {ctx.status.value}; its records are closed")

        new_task = Task(
            name=req.title,
            description=req.description,
            notes=req.context,
            priority=req.priority,
            urgency=_coerce_urgency(req.urgency),
            metadata={"inserted_by": "dynamic_adjuster"},
        )
        suggestions: list[AdjustmentSuggestion] = []
        adjusted: list[Task] = []
        cycle: list[str] = []

        with self.engine.store.transaction() as tx:
            placement = self._place(tx, req)
            new_task.dependencies = list(placement.dependencies)
            new_task.metadata["strategy"] = placement.strategy

            related = []
            for rid in req.related_tasks:
                if tx.get(rid) is None:
                    warnings.append(f"Related task {rid} does not exist; ignored")
                elif rid not in related:
                    related.append(rid)
            new_task.related_tasks = related
            tx.add(new_task)

            if placement.strategy == STRATEGY_INSERT_AFTER:
                adjusted, rewired = self._rewire_after(tx, placement.anchor_id, new_task)
                suggestions.extend(
                    self._rewire_suggestion(t, before, new_task, placement) for t, before in rewired
                )
            elif placement.strategy == STRATEGY_INSERT_BEFORE:
                anchor = tx.get(placement.anchor_id)
                before = list(anchor.dependencies)
                anchor.add_dependency(new_task.id)
                adjusted = [anchor]
                suggestions.append(self._rewire_suggestion(anchor, before, new_task, placement))

            cycle = graph.detect_cycle(tx.tasks)
            if cycle:
                tx.rollback()

        if cycle:
            warnings.append(f"Circular dependency detected: {' -> '.join(cycle)}; insertion rolled back")
            logger.warning("Rolled back insertion of '{}': cycle {}", req.title, cycle)
            return DynamicAdjustmentResult(
                success=False,
                warnings=warnings,
                strategy=placement.strategy,
                summary=self.templates.render(
                    "insertion_rejected",
                    task_name=req.title,
                    reason=f"cycle {' -> '.join(cycle)}",
                ),
            )

        suggestions.insert(0, AdjustmentSuggestion(
            task_id=new_task.id,
            adjustment_type="dependency",
            current_value=[],
            suggested_value=list(new_task.dependencies),
            reasoning=placement.reasoning,
            confidence=placement.confidence,
            impact=AdjustmentImpact(
                risk_change="low" if placement.confidence >= 1.0 else "medium",
                affected_tasks=[t.id for t in adjusted],
            ),
        ))
        if placement.confidence < 1.0:
            warnings.append(
                f"No explicit anchor; placement chosen with confidence {placement.confidence:.1f}"
            )

        execution_id, decision_id = self._record_decision(req, new_task, placement, adjusted)
        summary = self.templates.render(
            "insertion_summary",
            task_name=new_task.name,
            task_id=new_task.id,
            strategy=placement.strategy.replace("_", " "),
            dependencies=new_task.dependencies,
            adjusted_count=len(adjusted),
            warning_count=len(warnings),
        )
        logger.info("Inserted task {} via {} ({} rewired)", new_task.id, placement.strategy, len(adjusted))
        return DynamicAdjustmentResult(
            success=True,
            inserted_task=new_task,
            adjusted_tasks=adjusted,
            suggestions=suggestions,
            warnings=warnings,
            summary=summary,
            strategy=placement.strategy,
            execution_id=execution_id,
            decision_id=decision_id,
        )

    def _place(self, tx: _TaskTx, req: TaskInsertionRequest) -> _Placement:
        if req.insert_after:
            anchor = tx.get(req.insert_after)
            if anchor is None:
                raise AnchorNotFoundError(req.insert_after)
            return _Placement(
                strategy=STRATEGY_INSERT_AFTER,
                anchor_id=anchor.id,
                dependencies=[anchor.id],
                confidence=1.0,
                reasoning=f"Explicitly inserted after '{anchor.name}'",
            )
        if req.insert_before:
            anchor = tx.get(req.insert_before)
            if anchor is None:
                raise AnchorNotFoundError(req.insert_before)
            if anchor.is_completed:
                raise ValidationError(
                    f"Cannot insert before completed task {anchor.id}; completed tasks cannot gain dependencies"
                )
            return _Placement(
                strategy=STRATEGY_INSERT_BEFORE,
                anchor_id=anchor.id,
                dependencies=list(anchor.dependencies),
                confidence=1.0,
                reasoning=f"Explicitly inserted before '{anchor.name}', inheriting its prerequisites",
            )
        return choose_heuristic_anchor(tx.list_all())

    @staticmethod
    def _rewire_after(
        tx: _TaskTx, anchor_id: str, new_task: Task
    ) -> tuple[list[Task], list[tuple[Task, list[str]]]]:
        adjusted: list[Task] = []
        rewired: list[tuple[Task, list[str]]] = []
        for dependent in tx.dependents_of(anchor_id):
            if dependent.id == new_task.id or dependent.is_completed:
                continue
            before = list(dependent.dependencies)
            dependent.replace_dependency(anchor_id, new_task.id)
            adjusted.append(dependent)
            rewired.append((dependent, before))
        if adjusted:
            tx.dirty = True
        return adjusted, rewired

    @staticmethod
    def _rewire_suggestion(
        task: Task, before: list[str], new_task: Task, placement: _Placement
    ) -> AdjustmentSuggestion:
        return AdjustmentSuggestion(
            task_id=task.id,
            adjustment_type="dependency",
            current_value=before,
            suggested_value=list(task.dependencies),
            reasoning=f"'{task.name}' now waits for inserted task '{new_task.name}'",
            confidence=placement.confidence,
            impact=AdjustmentImpact(risk_change="low", affected_tasks=[task.id, new_task.id]),
        )

    def _record_decision(
        self,
        req: TaskInsertionRequest,
        new_task: Task,
        placement: _Placement,
        adjusted: list[Task],
    ) -> tuple[str, str]:
        execution_id = req.execution_id
        owns_context = execution_id is None
        if owns_context:
            execution_id = self.memory.start_execution(new_task.id)
        decision = self.memory.record_decision(
            execution_id,
            context=f"Insert task '{new_task.name}' into the plan",
            options=list(_STRATEGY_OPTIONS),
            chosen=placement.strategy,
            reasoning=placement.reasoning,
            affected_tasks=[new_task.id] + [t.id for t in adjusted],
        )
        if owns_context:
            self.memory.end_execution(
                execution_id,
                ExecutionStatus.COMPLETED,
                summary=f"Inserted {new_task.id} via {placement.strategy}",
            )
        return execution_id, decision.decision_id

    # ------------------------------------------------------------------
    # Re-balancing from execution memory
    # ------------------------------------------------------------------

    def adjust_tasks_based_on_context(self, execution_id: str) -> ContextAdjustmentResult:
        """Turn the discoveries of an execution into suggestions for downstream tasks.

        Risks and problems suggest an approach change, everything else a note.
        Suggestions whose confidence exceeds the auto-apply threshold are
        written into the affected task's notes.
        """
        ctx = self.memory.get_context(execution_id)
        snapshot = self.engine.store.read_snapshot()
        by_id = {t.id: t for t in snapshot}
        downstream = [
            by_id[tid] for tid in graph.dependents_of(snapshot, ctx.task_id)
            if tid in by_id and not by_id[tid].is_completed
        ]

        suggestions: list[AdjustmentSuggestion] = []
        for discovery in ctx.discoveries:
            confidence = _RELEVANCE_CONFIDENCE[discovery.relevance]
            risky = discovery.category in (DiscoveryCategory.RISK, DiscoveryCategory.PROBLEM)
            note = f"[{discovery.category.value}] {discovery.title}"
            if discovery.description:
                note += f": {discovery.description}"
            for task in downstream:
                suggestions.append(AdjustmentSuggestion(
                    task_id=task.id,
                    adjustment_type="approach" if risky else "notes",
                    current_value=task.notes,
                    suggested_value=note,
                    reasoning=f"{discovery.category.value.capitalize()} found while executing {ctx.task_id}",
                    confidence=confidence,
                    impact=AdjustmentImpact(
                        risk_change=discovery.relevance.value if risky else "none",
                        affected_tasks=[task.id],
                    ),
                ))

        applied: list[str] = []
        for suggestion in suggestions:
            if suggestion.confidence <= AUTO_APPLY_CONFIDENCE:
                continue
            current = self.engine.get_task(suggestion.task_id)
            if current is None or current.is_completed:
                continue
            notes = f"{current.notes}\n{suggestion.suggested_value}" if current.notes else suggestion.suggested_value
            self.engine.update_task(suggestion.task_id, {"notes": notes})
            if suggestion.task_id not in applied:
                applied.append(suggestion.task_id)

        summary = self.templates.render(
            "context_adjustment_summary",
            discovery_count=len(ctx.discoveries),
            execution_id=execution_id,
            suggestion_count=len(suggestions),
            applied_count=len(applied),
        )
        return ContextAdjustmentResult(
            execution_id=execution_id, suggestions=suggestions, applied=applied, summary=summary
        )

    def resolve_dependency_conflicts(self, tasks: Optional[list[Any]] = None) -> ConflictReport:
        """Report cycles and dangling references, proposing dependency lists without them.

        Works on *tasks* (Task objects or mappings) when given, otherwise on a
        store snapshot.  Nothing is written.
        """
        if tasks is None:
            tasks = self.engine.store.read_snapshot()
        report = ConflictReport()
        report.missing_references = graph.validate_references(tasks).errors
        cycles, removed = graph.break_cycles(tasks)
        report.cycles = cycles

        known = {t.id if isinstance(t, Task) else str(t.get("id", "")) for t in tasks}
        for t in tasks:
            if isinstance(t, Task):
                tid, deps = t.id, list(t.dependencies)
            else:
                tid = str(t.get("id", ""))
                deps = [str(d) for d in (t.get("dependencies") or []) + (t.get("blocked_by") or [])]
            proposed = [
                d for d in dict.fromkeys(deps)
                if d in known and (tid, d) not in removed
            ]
            if proposed != deps:
                report.proposed_dependencies[tid] = proposed
        return report
