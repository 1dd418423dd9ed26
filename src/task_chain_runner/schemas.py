"""Pydantic models validating input at the package boundary.

Requests coming from the CLI, from imported plans, or from chain definitions
are parsed here before any store is touched.  :func:`parse_model` converts
pydantic's errors into :class:`~task_chain_runner.errors.ValidationError`.
"""

from __future__ import annotations

from typing import Any, Literal, Optional, TypeVar

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .constants import (
    DEFAULT_ENABLE_PARALLEL,
    DEFAULT_ERROR_STRATEGY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_TOTAL_TIMEOUT_SECONDS,
    MIN_DESCRIPTION_LENGTH,
    MIN_TITLE_LENGTH,
)
from .errors import ValidationError

UrgencyName = Literal["low", "medium", "high", "critical"]
ErrorStrategyName = Literal["fail_fast", "continue_on_error", "retry_on_error", "skip_on_error"]
KnowledgeTypeName = Literal["pattern", "solution", "pitfall", "best-practice", "lesson-learned"]
TeamRoleName = Literal[
    "product-manager",
    "ui-designer",
    "ux-designer",
    "frontend-developer",
    "backend-developer",
    "fullstack-developer",
    "mobile-developer",
    "devops-engineer",
    "qa-engineer",
    "data-engineer",
    "security-engineer",
    "tech-lead",
    "project-manager",
]

M = TypeVar("M", bound=BaseModel)


def parse_model(model_cls: type[M], data: Any) -> M:
    """Validate *data* into *model_cls*, raising our ValidationError on failure."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as exc:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ())) or "input"
            messages.append(f"{loc}: {err.get('msg')}")
        raise ValidationError(
            f"Invalid {model_cls.__name__}: " + "; ".join(messages), errors=messages
        ) from None


class _Boundary(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class RelatedFileSpec(_Boundary):
    path: str = Field(min_length=1)
    type: Literal["to_modify", "reference", "create", "dependency", "other"] = "reference"
    description: str = ""
    line_start: Optional[int] = Field(default=None, ge=1)
    line_end: Optional[int] = Field(default=None, ge=1)


class BatchTaskItem(_Boundary):
    """One entry of a batch import; dependencies may be names or ids."""

    name: str = Field(min_length=1)
    description: str = ""
    notes: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    related_files: list[RelatedFileSpec] = Field(
        default_factory=list, validation_alias=AliasChoices("related_files", "relatedFiles")
    )
    implementation_guide: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("implementation_guide", "implementationGuide")
    )
    verification_criteria: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("verification_criteria", "verificationCriteria")
    )
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    urgency: Optional[UrgencyName] = None


class TaskInsertionRequest(_Boundary):
    title: str = Field(min_length=MIN_TITLE_LENGTH)
    description: str = Field(min_length=MIN_DESCRIPTION_LENGTH)
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    urgency: Optional[UrgencyName] = None
    insert_after: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("insert_after", "insertAfter")
    )
    insert_before: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("insert_before", "insertBefore")
    )
    related_tasks: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("related_tasks", "relatedTasks")
    )
    context: Optional[str] = None
    execution_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("execution_id", "executionId")
    )


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------

class ChainConfig(_Boundary):
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    step_timeout_seconds: float = Field(default=DEFAULT_STEP_TIMEOUT_SECONDS, gt=0)
    total_timeout_seconds: float = Field(default=DEFAULT_TOTAL_TIMEOUT_SECONDS, gt=0)
    error_strategy: ErrorStrategyName = DEFAULT_ERROR_STRATEGY
    enable_parallel: bool = DEFAULT_ENABLE_PARALLEL


class ChainStepSpec(_Boundary):
    name: str = Field(min_length=1)
    description: str = ""
    action: str = "prompt"
    prompt: str = ""
    input_mapping: dict[str, str] = Field(default_factory=dict)
    output_mapping: dict[str, str] = Field(default_factory=dict)
    track: Optional[str] = None
    parents: Optional[list[int]] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    options: dict[str, Any] = Field(default_factory=dict)


class ChainDefinition(_Boundary):
    id: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
    name: str = Field(min_length=1)
    description: str = ""
    steps: list[ChainStepSpec] = Field(min_length=1)
    config: Optional[ChainConfig] = None


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------

class KnowledgeContextSpec(_Boundary):
    domain: str = ""
    technologies: list[str] = Field(default_factory=list)
    scenario: str = ""
    constraints: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)


class ApplicabilitySpec(_Boundary):
    task_types: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("task_types", "taskTypes")
    )
    project_types: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("project_types", "projectTypes")
    )
    conditions: list[str] = Field(default_factory=list)
    exclusions: list[str] = Field(default_factory=list)


class KnowledgeSourceSpec(_Boundary):
    type: Literal["execution", "analysis", "research", "external", "user-input"] = "execution"
    task_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("task_id", "taskId"))
    timestamp: Optional[str] = None
    reliability: Literal["high", "medium", "low"] = "medium"
    verification_status: Literal["verified", "unverified", "disputed"] = Field(
        default="unverified", validation_alias=AliasChoices("verification_status", "verificationStatus")
    )


class KnowledgeEntrySpec(_Boundary):
    id: Optional[str] = None
    type: KnowledgeTypeName
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    context: KnowledgeContextSpec = Field(default_factory=KnowledgeContextSpec)
    applicability: ApplicabilitySpec = Field(default_factory=ApplicabilitySpec)
    confidence: float = Field(ge=0.0, le=1.0)
    source: KnowledgeSourceSpec = Field(default_factory=KnowledgeSourceSpec)
    tags: list[str] = Field(default_factory=list)
    related_knowledge: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("related_knowledge", "relatedKnowledge")
    )
    supersedes: Optional[str] = None


# ---------------------------------------------------------------------------
# Team memory
# ---------------------------------------------------------------------------

class TeamMemberSpec(_Boundary):
    id: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    name: str = Field(min_length=1)
    role: TeamRoleName
    email: Optional[str] = None
    expertise: list[str] = Field(default_factory=list)


class LearningRecordSpec(_Boundary):
    project_id: str = Field(min_length=1, validation_alias=AliasChoices("project_id", "projectId"))
    type: Literal["success", "failure", "improvement", "pattern"] = Field(
        validation_alias=AliasChoices("type", "learning_type", "learningType")
    )
    title: str = Field(min_length=1)
    description: str = ""
    roles: list[TeamRoleName] = Field(default_factory=list)
    technologies: list[str] = Field(default_factory=list)
    project_phase: str = Field(default="", validation_alias=AliasChoices("project_phase", "projectPhase"))
    complexity: Literal["low", "medium", "high"] = "medium"
    lessons: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    created_by: str = Field(min_length=1, validation_alias=AliasChoices("created_by", "createdBy"))
