"""Records kept by the execution memory store.

An :class:`ExecutionContext` is the trace of one task-execution run: ordered
steps, decisions, discoveries and checkpoints.  All four are append-only and
the context moves from ``running`` to a terminal status exactly once.

:class:`KnowledgeEntry` objects are long-lived and never mutated; a newer
entry points at the one it replaces through ``supersedes``.

The team records at the bottom sit on top of the knowledge base and are kept
per team by :class:`~task_chain_runner.memory.team.TeamMemoryStore`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils import _generate_id, _now_iso


def _dict_factory(items: list[tuple[str, Any]]) -> dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in items}


def _enum(enum_cls: type[Enum], raw: Any, default: Enum) -> Any:
    if raw is None:
        return default
    try:
        return enum_cls(str(raw.value if isinstance(raw, Enum) else raw))
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DiscoveryCategory(str, Enum):
    INSIGHT = "insight"
    PROBLEM = "problem"
    OPPORTUNITY = "opportunity"
    RISK = "risk"
    SOLUTION = "solution"


class Relevance(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class KnowledgeType(str, Enum):
    PATTERN = "pattern"
    SOLUTION = "solution"
    PITFALL = "pitfall"
    BEST_PRACTICE = "best-practice"
    LESSON_LEARNED = "lesson-learned"


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------

@dataclass
class ExecutionStep:
    action: str
    description: str = ""
    status: StepStatus = StepStatus.COMPLETED
    output: Optional[Any] = None
    duration_ms: Optional[float] = None
    resources: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    step_id: str = field(default_factory=lambda: _generate_id("step"))
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionStep":
        return cls(
            action=str(data.get("action", "")),
            description=str(data.get("description", "") or ""),
            status=_enum(StepStatus, data.get("status"), StepStatus.COMPLETED),
            output=data.get("output"),
            duration_ms=data.get("duration_ms"),
            resources=list(data.get("resources") or []),
            metadata=dict(data.get("metadata") or {}),
            step_id=str(data.get("step_id") or _generate_id("step")),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class DecisionOption:
    option_id: str
    description: str
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)
    risk_level: str = "low"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DecisionOption":
        return cls(
            option_id=str(data.get("option_id", "")),
            description=str(data.get("description", "")),
            pros=list(data.get("pros") or []),
            cons=list(data.get("cons") or []),
            risk_level=str(data.get("risk_level") or "low"),
        )


@dataclass
class Decision:
    context: str
    options: list[DecisionOption]
    chosen: str
    reasoning: str
    affected_tasks: list[str] = field(default_factory=list)
    decision_id: str = field(default_factory=lambda: _generate_id("decision"))
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Decision":
        return cls(
            context=str(data.get("context", "")),
            options=[DecisionOption.from_dict(o) for o in data.get("options") or []],
            chosen=str(data.get("chosen", "")),
            reasoning=str(data.get("reasoning", "")),
            affected_tasks=list(data.get("affected_tasks") or []),
            decision_id=str(data.get("decision_id") or _generate_id("decision")),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class Discovery:
    category: DiscoveryCategory
    title: str
    description: str = ""
    relevance: Relevance = Relevance.MEDIUM
    discovery_id: str = field(default_factory=lambda: _generate_id("discovery"))
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Discovery":
        return cls(
            category=_enum(DiscoveryCategory, data.get("category"), DiscoveryCategory.INSIGHT),
            title=str(data.get("title", "")),
            description=str(data.get("description", "") or ""),
            relevance=_enum(Relevance, data.get("relevance"), Relevance.MEDIUM),
            discovery_id=str(data.get("discovery_id") or _generate_id("discovery")),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class Checkpoint:
    """Snapshot of where a run stood, with instructions for resuming it."""
    description: str
    resume_instructions: str = ""
    state: dict[str, Any] = field(default_factory=dict)
    checkpoint_id: str = field(default_factory=lambda: _generate_id("checkpoint"))
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            description=str(data.get("description", "")),
            resume_instructions=str(data.get("resume_instructions", "") or ""),
            state=dict(data.get("state") or {}),
            checkpoint_id=str(data.get("checkpoint_id") or _generate_id("checkpoint")),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class ExecutionContext:
    """Everything recorded while executing one task."""
    task_id: str
    execution_id: str = field(default_factory=lambda: _generate_id("exec"))
    chain_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    steps: list[ExecutionStep] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    discoveries: list[Discovery] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    knowledge_generated: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionContext":
        return cls(
            task_id=str(data.get("task_id", "")),
            execution_id=str(data.get("execution_id") or _generate_id("exec")),
            chain_id=data.get("chain_id"),
            status=_enum(ExecutionStatus, data.get("status"), ExecutionStatus.RUNNING),
            steps=[ExecutionStep.from_dict(s) for s in data.get("steps") or []],
            decisions=[Decision.from_dict(d) for d in data.get("decisions") or []],
            discoveries=[Discovery.from_dict(d) for d in data.get("discoveries") or []],
            checkpoints=[Checkpoint.from_dict(c) for c in data.get("checkpoints") or []],
            knowledge_generated=list(data.get("knowledge_generated") or []),
            summary=data.get("summary"),
            started_at=str(data.get("started_at") or _now_iso()),
            ended_at=data.get("ended_at"),
        )


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------

@dataclass
class KnowledgeContext:
    domain: str = ""
    technologies: list[str] = field(default_factory=list)
    scenario: str = ""
    constraints: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)


@dataclass
class Applicability:
    task_types: list[str] = field(default_factory=list)
    project_types: list[str] = field(default_factory=list)
    conditions: list[str] = field(default_factory=list)
    exclusions: list[str] = field(default_factory=list)


@dataclass
class KnowledgeSource:
    type: str = "execution"  # execution | analysis | research | external | user-input
    task_id: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)
    reliability: str = "medium"  # high | medium | low
    verification_status: str = "unverified"  # verified | unverified | disputed


@dataclass
class KnowledgeEntry:
    type: KnowledgeType
    title: str
    content: str
    confidence: float
    context: KnowledgeContext = field(default_factory=KnowledgeContext)
    applicability: Applicability = field(default_factory=Applicability)
    source: KnowledgeSource = field(default_factory=KnowledgeSource)
    tags: list[str] = field(default_factory=list)
    related_knowledge: list[str] = field(default_factory=list)
    supersedes: Optional[str] = None
    id: str = field(default_factory=lambda: _generate_id("knowledge"))
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KnowledgeEntry":
        ctx = data.get("context") or {}
        app = data.get("applicability") or {}
        src = data.get("source") or {}
        return cls(
            id=str(data.get("id") or _generate_id("knowledge")),
            type=_enum(KnowledgeType, data.get("type"), KnowledgeType.SOLUTION),
            title=str(data.get("title", "")),
            content=str(data.get("content", "")),
            confidence=float(data.get("confidence", 0.0)),
            context=KnowledgeContext(
                domain=str(ctx.get("domain", "") or ""),
                technologies=list(ctx.get("technologies") or []),
                scenario=str(ctx.get("scenario", "") or ""),
                constraints=list(ctx.get("constraints") or []),
                assumptions=list(ctx.get("assumptions") or []),
            ),
            applicability=Applicability(
                task_types=list(app.get("task_types") or []),
                project_types=list(app.get("project_types") or []),
                conditions=list(app.get("conditions") or []),
                exclusions=list(app.get("exclusions") or []),
            ),
            source=KnowledgeSource(
                type=str(src.get("type") or "execution"),
                task_id=src.get("task_id"),
                timestamp=str(src.get("timestamp") or _now_iso()),
                reliability=str(src.get("reliability") or "medium"),
                verification_status=str(src.get("verification_status") or "unverified"),
            ),
            tags=list(data.get("tags") or []),
            related_knowledge=list(data.get("related_knowledge") or []),
            supersedes=data.get("supersedes"),
            created_at=str(data.get("created_at") or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Team memory
# ---------------------------------------------------------------------------

class TeamRole(str, Enum):
    PRODUCT_MANAGER = "product-manager"
    UI_DESIGNER = "ui-designer"
    UX_DESIGNER = "ux-designer"
    FRONTEND_DEVELOPER = "frontend-developer"
    BACKEND_DEVELOPER = "backend-developer"
    FULLSTACK_DEVELOPER = "fullstack-developer"
    MOBILE_DEVELOPER = "mobile-developer"
    DEVOPS_ENGINEER = "devops-engineer"
    QA_ENGINEER = "qa-engineer"
    DATA_ENGINEER = "data-engineer"
    SECURITY_ENGINEER = "security-engineer"
    TECH_LEAD = "tech-lead"
    PROJECT_MANAGER = "project-manager"


class Visibility(str, Enum):
    PUBLIC = "public"
    TEAM = "team"
    ROLE_SPECIFIC = "role-specific"


class LearningType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    IMPROVEMENT = "improvement"
    PATTERN = "pattern"


class CollaborationType(str, Enum):
    TEAM_COLLABORATION = "team-collaboration"
    CROSS_FUNCTIONAL = "cross-functional"
    PEER_REVIEW = "peer-review"
    MENTORING = "mentoring"


def _roles(raw: Any) -> list[TeamRole]:
    out: list[TeamRole] = []
    for r in raw or []:
        try:
            role = TeamRole(str(r.value if isinstance(r, Enum) else r))
        except ValueError:
            continue
        if role not in out:
            out.append(role)
    return out


@dataclass
class TeamMember:
    name: str
    role: TeamRole
    expertise: list[str] = field(default_factory=list)
    email: Optional[str] = None
    contribution_score: int = 0
    member_id: str = field(default_factory=lambda: _generate_id("member"))
    joined_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TeamMember":
        return cls(
            name=str(data.get("name", "")),
            role=_enum(TeamRole, data.get("role"), TeamRole.FULLSTACK_DEVELOPER),
            expertise=list(data.get("expertise") or []),
            email=data.get("email"),
            contribution_score=int(data.get("contribution_score") or 0),
            member_id=str(data.get("member_id") or _generate_id("member")),
            joined_at=str(data.get("joined_at") or _now_iso()),
        )


@dataclass
class KnowledgeRating:
    rater_id: str
    rating: float
    comment: Optional[str] = None
    rated_at: str = field(default_factory=_now_iso)


@dataclass
class SharedKnowledge:
    """A knowledge-base entry shared with a team, plus how the team received it."""
    knowledge_id: str
    contributor_id: str
    visibility: Visibility = Visibility.TEAM
    applicable_roles: list[TeamRole] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    usage_count: int = 0
    ratings: list[KnowledgeRating] = field(default_factory=list)
    shared_id: str = field(default_factory=lambda: _generate_id("shared"))
    shared_at: str = field(default_factory=_now_iso)

    def average_rating(self, confidence: float) -> float:
        """Mean rating on a 1-5 scale; unrated entries fall back to ``confidence * 5``."""
        if not self.ratings:
            return confidence * 5
        return sum(r.rating for r in self.ratings) / len(self.ratings)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SharedKnowledge":
        return cls(
            knowledge_id=str(data.get("knowledge_id", "")),
            contributor_id=str(data.get("contributor_id", "")),
            visibility=_enum(Visibility, data.get("visibility"), Visibility.TEAM),
            applicable_roles=_roles(data.get("applicable_roles")),
            tags=list(data.get("tags") or []),
            usage_count=int(data.get("usage_count") or 0),
            ratings=[
                KnowledgeRating(
                    rater_id=str(r.get("rater_id", "")),
                    rating=float(r.get("rating", 0)),
                    comment=r.get("comment"),
                    rated_at=str(r.get("rated_at") or _now_iso()),
                )
                for r in data.get("ratings") or []
            ],
            shared_id=str(data.get("shared_id") or _generate_id("shared")),
            shared_at=str(data.get("shared_at") or _now_iso()),
        )


@dataclass
class CollaborationPattern:
    name: str
    description: str
    roles: list[TeamRole]
    type: CollaborationType = CollaborationType.TEAM_COLLABORATION
    workflow: list[str] = field(default_factory=list)
    success_rate: float = 0.0
    usage_count: int = 0
    improvements: list[str] = field(default_factory=list)
    pattern_id: str = field(default_factory=lambda: _generate_id("pattern"))
    last_used: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollaborationPattern":
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description", "") or ""),
            roles=_roles(data.get("roles")),
            type=_enum(CollaborationType, data.get("type"), CollaborationType.TEAM_COLLABORATION),
            workflow=list(data.get("workflow") or []),
            success_rate=float(data.get("success_rate") or 0.0),
            usage_count=int(data.get("usage_count") or 0),
            improvements=list(data.get("improvements") or []),
            pattern_id=str(data.get("pattern_id") or _generate_id("pattern")),
            last_used=str(data.get("last_used") or _now_iso()),
        )


@dataclass
class LearningRecord:
    project_id: str
    type: LearningType
    title: str
    description: str = ""
    roles: list[TeamRole] = field(default_factory=list)
    technologies: list[str] = field(default_factory=list)
    project_phase: str = ""
    complexity: str = "medium"  # low | medium | high
    lessons: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    created_by: str = ""
    verified_by: list[str] = field(default_factory=list)
    record_id: str = field(default_factory=lambda: _generate_id("learning"))
    created_at: str = field(default_factory=_now_iso)

    @property
    def verified(self) -> bool:
        return bool(self.verified_by)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self, dict_factory=_dict_factory)
        data["verified"] = self.verified
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LearningRecord":
        return cls(
            project_id=str(data.get("project_id", "")),
            type=_enum(LearningType, data.get("type"), LearningType.IMPROVEMENT),
            title=str(data.get("title", "")),
            description=str(data.get("description", "") or ""),
            roles=_roles(data.get("roles")),
            technologies=list(data.get("technologies") or []),
            project_phase=str(data.get("project_phase", "") or ""),
            complexity=str(data.get("complexity") or "medium"),
            lessons=list(data.get("lessons") or []),
            recommendations=list(data.get("recommendations") or []),
            created_by=str(data.get("created_by", "") or ""),
            verified_by=list(data.get("verified_by") or []),
            record_id=str(data.get("record_id") or _generate_id("learning")),
            created_at=str(data.get("created_at") or _now_iso()),
        )
