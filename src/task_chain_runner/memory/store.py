"""File-backed execution memory: run contexts, knowledge base, chain run records.

Layout under ``.task_chain/memory/``::

    contexts/<execution_id>.json
    knowledge/knowledge-base.json
    chains/<chain_id>.json

Every document is rewritten atomically while holding one namespace-wide file
lock, so readers never observe a half-written record.
"""

from __future__ import annotations

from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from filelock import FileLock, Timeout
from loguru import logger

from ..constants import (
    CHAINS_DIR,
    CONTEXTS_DIR,
    DEFAULT_MIN_CONFIDENCE,
    KNOWLEDGE_DIR,
    KNOWLEDGE_FILE,
    LOCK_TIMEOUT,
)
from ..errors import (
    ChainNotFoundError,
    ExecutionNotFoundError,
    KnowledgeNotFoundError,
    StorageError,
    ValidationError,
)
from ..io_utils import _atomic_write_json, _load_data_strict
from ..schemas import KnowledgeEntrySpec, parse_model
from ..utils import _now_iso
from .model import (
    Applicability,
    Checkpoint,
    Decision,
    DecisionOption,
    Discovery,
    DiscoveryCategory,
    ExecutionContext,
    ExecutionStatus,
    ExecutionStep,
    KnowledgeContext,
    KnowledgeEntry,
    KnowledgeSource,
    KnowledgeType,
    Relevance,
    StepStatus,
)

MEMORY_LOCK_FILE = "memory.lock"
KNOWLEDGE_VERSION = 1
TOP_PATTERNS = 5


def _coerce(enum_cls: Any, value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        valid = [e.value for e in enum_cls]
        raise ValidationError(f"Invalid {field_name} '{value}'. Valid values: {valid}") from None


def _knowledge_from_spec(data: dict[str, Any]) -> KnowledgeEntry:
    spec = parse_model(KnowledgeEntrySpec, data)
    source = spec.source
    entry = KnowledgeEntry(
        type=KnowledgeType(spec.type),
        title=spec.title,
        content=spec.content,
        confidence=spec.confidence,
        context=KnowledgeContext(**spec.context.model_dump()),
        applicability=Applicability(**spec.applicability.model_dump()),
        source=KnowledgeSource(
            type=source.type,
            task_id=source.task_id,
            timestamp=source.timestamp or _now_iso(),
            reliability=source.reliability,
            verification_status=source.verification_status,
        ),
        tags=list(spec.tags),
        related_knowledge=list(spec.related_knowledge),
        supersedes=spec.supersedes,
    )
    if spec.id:
        entry.id = spec.id
    return entry


class ExecutionMemoryStore:
    """Persist what happened during task executions and what was learned.

    Parameters
    ----------
    memory_dir:
        Path to the ``.task_chain/memory/`` directory.
    """

    def __init__(self, memory_dir: Path, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self._dir = memory_dir
        self._contexts_dir = memory_dir / CONTEXTS_DIR
        self._knowledge_path = memory_dir / KNOWLEDGE_DIR / KNOWLEDGE_FILE
        self._chains_dir = memory_dir / CHAINS_DIR
        self._lock_path = memory_dir / MEMORY_LOCK_FILE
        self._lock_timeout = lock_timeout
        self._lock = FileLock(str(self._lock_path), timeout=lock_timeout)

    # ------------------------------------------------------------------
    # Locking / raw documents
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                yield
        except Timeout as exc:
            raise StorageError(
                f"Timed out after {self._lock_timeout}s waiting for {self._lock_path.name}"
            ) from exc

    @staticmethod
    def _document_path(directory: Path, doc_id: str, kind: str) -> Path:
        """Path of ``<doc_id>.json`` inside *directory*; ids that would leave it are rejected."""
        path = directory / f"{doc_id}.json"
        if not doc_id or path.resolve().parent != directory.resolve():
            raise ValidationError(f"Invalid {kind} id '{doc_id}'")
        return path

    def _context_path(self, execution_id: str) -> Path:
        return self._document_path(self._contexts_dir, execution_id, "execution")

    def _chain_path(self, chain_id: str) -> Path:
        return self._document_path(self._chains_dir, chain_id, "chain")

    def _load_context(self, execution_id: str) -> ExecutionContext:
        path = self._context_path(execution_id)
        if not path.exists():
            raise ExecutionNotFoundError(execution_id)
        return ExecutionContext.from_dict(_load_data_strict(path, {}))

    def _save_context(self, ctx: ExecutionContext) -> None:
        _atomic_write_json(self._context_path(ctx.execution_id), ctx.to_dict())

    @contextmanager
    def _open_context(self, execution_id: str) -> Iterator[ExecutionContext]:
        """Load a running context for appending; saved when the block exits cleanly."""
        with self._locked():
            ctx = self._load_context(execution_id)
            if not ctx.is_running:
                raise ValidationError(
                    f"Execution {execution_id} is {ctx.status.value}; its records are closed"
                )
            yield ctx
            self._save_context(ctx)

    def _load_knowledge(self) -> list[KnowledgeEntry]:
        data = _load_data_strict(self._knowledge_path, {})
        return [KnowledgeEntry.from_dict(e) for e in data.get("entries") or []]

    def _save_knowledge(self, entries: list[KnowledgeEntry]) -> None:
        payload = {
            "version": KNOWLEDGE_VERSION,
            "updated_at": _now_iso(),
            "entries": [e.to_dict() for e in entries],
        }
        _atomic_write_json(self._knowledge_path, payload)

    # ------------------------------------------------------------------
    # Execution contexts
    # ------------------------------------------------------------------

    def start_execution(self, task_id: str, chain_id: Optional[str] = None) -> str:
        """Open a new execution context for *task_id* and return its id."""
        ctx = ExecutionContext(task_id=task_id, chain_id=chain_id)
        with self._locked():
            self._save_context(ctx)
        logger.debug("Started execution {} for task {}", ctx.execution_id, task_id)
        return ctx.execution_id

    def record_step(
        self,
        execution_id: str,
        action: str,
        description: str = "",
        status: Union[str, StepStatus] = StepStatus.COMPLETED,
        output: Optional[Any] = None,
        duration_ms: Optional[float] = None,
        resources: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ExecutionStep:
        step = ExecutionStep(
            action=action,
            description=description,
            status=_coerce(StepStatus, status, "step status"),
            output=output,
            duration_ms=duration_ms,
            resources=list(resources or []),
            metadata=dict(metadata or {}),
        )
        with self._open_context(execution_id) as ctx:
            ctx.steps.append(step)
        return step

    def record_decision(
        self,
        execution_id: str,
        context: str,
        options: Iterable[Union[DecisionOption, dict[str, Any]]],
        chosen: str,
        reasoning: str,
        affected_tasks: Optional[list[str]] = None,
    ) -> Decision:
        opts = [o if isinstance(o, DecisionOption) else DecisionOption.from_dict(o) for o in options]
        if not opts:
            raise ValidationError("A decision needs at least one option")
        if chosen not in {o.option_id for o in opts}:
            raise ValidationError(f"Chosen option '{chosen}' is not among the considered options")
        decision = Decision(
            context=context,
            options=opts,
            chosen=chosen,
            reasoning=reasoning,
            affected_tasks=list(affected_tasks or []),
        )
        with self._open_context(execution_id) as ctx:
            ctx.decisions.append(decision)
        return decision

    def record_discovery(
        self,
        execution_id: str,
        category: Union[str, DiscoveryCategory],
        title: str,
        description: str = "",
        relevance: Union[str, Relevance] = Relevance.MEDIUM,
    ) -> Discovery:
        if not title.strip():
            raise ValidationError("Discovery title must be non-empty")
        discovery = Discovery(
            category=_coerce(DiscoveryCategory, category, "discovery category"),
            title=title.strip(),
            description=description,
            relevance=_coerce(Relevance, relevance, "relevance"),
        )
        with self._open_context(execution_id) as ctx:
            ctx.discoveries.append(discovery)
        return discovery

    def create_checkpoint(
        self,
        execution_id: str,
        description: str,
        resume_instructions: str = "",
        state: Optional[dict[str, Any]] = None,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            description=description,
            resume_instructions=resume_instructions,
            state=dict(state or {}),
        )
        with self._open_context(execution_id) as ctx:
            ctx.checkpoints.append(checkpoint)
        return checkpoint

    def end_execution(
        self,
        execution_id: str,
        status: Union[str, ExecutionStatus] = ExecutionStatus.COMPLETED,
        summary: Optional[str] = None,
    ) -> ExecutionContext:
        """Move a running context to ``completed`` or ``failed``.  Only allowed once."""
        final = _coerce(ExecutionStatus, status, "execution status")
        if final == ExecutionStatus.RUNNING:
            raise ValidationError("An execution can only end as completed or failed")
        with self._open_context(execution_id) as ctx:
            ctx.status = final
            ctx.summary = summary
            ctx.ended_at = _now_iso()
        logger.debug("Execution {} ended {}", execution_id, final.value)
        return ctx

    def get_context(self, execution_id: str) -> ExecutionContext:
        with self._locked():
            return self._load_context(execution_id)

    def get_task_history(self, task_id: str) -> list[ExecutionContext]:
        """All execution contexts recorded for *task_id*, oldest first."""
        with self._locked():
            if not self._contexts_dir.exists():
                return []
            history = []
            for path in sorted(self._contexts_dir.glob("*.json")):
                ctx = ExecutionContext.from_dict(_load_data_strict(path, {}))
                if ctx.task_id == task_id:
                    history.append(ctx)
        return sorted(history, key=lambda c: c.started_at)

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------

    def record_knowledge(
        self,
        entry: Union[KnowledgeEntry, dict[str, Any]],
        execution_id: Optional[str] = None,
    ) -> KnowledgeEntry:
        """Add an entry to the knowledge base.

        Entries are immutable, so re-using an existing id is rejected.  When
        *execution_id* is given the entry is also linked to that running context.
        """
        if not isinstance(entry, KnowledgeEntry):
            entry = _knowledge_from_spec(entry)
        if not 0.0 <= entry.confidence <= 1.0:
            raise ValidationError(f"Confidence must be within [0, 1], got {entry.confidence}")

        with self._locked():
            entries = self._load_knowledge()
            ids = {e.id for e in entries}
            if entry.id in ids:
                raise ValidationError(f"Knowledge entry {entry.id} already exists; record a superseding entry instead")
            if entry.supersedes and entry.supersedes not in ids:
                raise KnowledgeNotFoundError(entry.supersedes)
            if execution_id:
                ctx = self._load_context(execution_id)
                if not ctx.is_running:
                    raise ValidationError(f"Execution {execution_id} is {ctx.status.value}; its records are closed")
                if entry.source.task_id is None:
                    entry.source.task_id = ctx.task_id
                ctx.knowledge_generated.append(entry.id)
            entries.append(entry)
            self._save_knowledge(entries)
            if execution_id:
                self._save_context(ctx)
        logger.info("Recorded {} knowledge {}: {}", entry.type.value, entry.id, entry.title)
        return entry

    def get_knowledge(self, knowledge_id: str) -> KnowledgeEntry:
        with self._locked():
            for e in self._load_knowledge():
                if e.id == knowledge_id:
                    return e
        raise KnowledgeNotFoundError(knowledge_id)

    def list_knowledge(self) -> list[KnowledgeEntry]:
        with self._locked():
            return self._load_knowledge()

    def query_knowledge(
        self,
        domain: Optional[str] = None,
        project_type: Optional[str] = None,
        technologies: Optional[list[str]] = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        knowledge_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[KnowledgeEntry]:
        """Entries applicable to the query context, highest confidence first.

        An entry is dropped when it has been superseded, falls below
        *min_confidence*, lists the domain or project type among its
        exclusions, or shares no technology with a non-empty *technologies*.
        Entries with no task/project types declared count as general and match
        any domain/project type.
        """
        wanted_type = _coerce(KnowledgeType, knowledge_type, "knowledge type") if knowledge_type else None
        techs = {t.lower() for t in technologies or [] if t}
        domain_l = domain.lower() if domain else None
        project_l = project_type.lower() if project_type else None

        entries = self.list_knowledge()
        superseded = {e.supersedes for e in entries if e.supersedes}

        matches: list[KnowledgeEntry] = []
        for e in entries:
            if e.id in superseded or e.confidence < min_confidence:
                continue
            if wanted_type and e.type != wanted_type:
                continue
            exclusions = {x.lower() for x in e.applicability.exclusions}
            if (domain_l and domain_l in exclusions) or (project_l and project_l in exclusions):
                continue
            if techs and not techs & {t.lower() for t in e.context.technologies}:
                continue
            if domain_l:
                task_types = {t.lower() for t in e.applicability.task_types}
                entry_domain = e.context.domain.lower()
                if domain_l != entry_domain and domain_l not in task_types and (entry_domain or task_types):
                    continue
            if project_l:
                project_types = {p.lower() for p in e.applicability.project_types}
                if project_types and project_l not in project_types:
                    continue
            matches.append(e)

        matches.sort(key=lambda e: e.confidence, reverse=True)
        return matches[:limit] if limit else matches

    def analyze_task_patterns(self, task_type: Optional[str] = None) -> dict[str, Any]:
        """Summarize the recurring patterns, pitfalls and best practices for a task type."""
        entries = self.query_knowledge(domain=task_type, min_confidence=0.0)
        buckets: dict[KnowledgeType, Counter[str]] = {
            KnowledgeType.PATTERN: Counter(),
            KnowledgeType.PITFALL: Counter(),
            KnowledgeType.BEST_PRACTICE: Counter(),
        }
        for e in entries:
            if e.type in buckets:
                buckets[e.type][e.title] += 1

        def _top(kind: KnowledgeType) -> list[str]:
            return [title for title, _ in buckets[kind].most_common(TOP_PATTERNS)]

        pitfalls = _top(KnowledgeType.PITFALL)
        practices = _top(KnowledgeType.BEST_PRACTICE)
        recommendations = [f"Avoid: {p}" for p in pitfalls] + [f"Apply: {b}" for b in practices]
        if not recommendations:
            recommendations.append(
                f"No recorded knowledge for '{task_type}' yet" if task_type else "No recorded knowledge yet"
            )
        return {
            "task_type": task_type,
            "entries_considered": len(entries),
            "common_patterns": _top(KnowledgeType.PATTERN),
            "frequent_pitfalls": pitfalls,
            "best_practices": practices,
            "recommendations": recommendations,
        }

    # ------------------------------------------------------------------
    # Chain run records
    # ------------------------------------------------------------------

    def save_chain_run(self, chain_id: str, record: dict[str, Any]) -> None:
        with self._locked():
            _atomic_write_json(self._chain_path(chain_id), record)

    def load_chain_run(self, chain_id: str) -> dict[str, Any]:
        path = self._chain_path(chain_id)
        with self._locked():
            if not path.exists():
                raise ChainNotFoundError(chain_id)
            return _load_data_strict(path, {})

    def list_chain_runs(self) -> list[str]:
        with self._locked():
            if not self._chains_dir.exists():
                return []
            return sorted(p.stem for p in self._chains_dir.glob("*.json"))
