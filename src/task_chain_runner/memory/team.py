"""Team memory: knowledge shared inside a team, and what the team learned.

One document per team under ``.task_chain/memory/team/<team_id>.json`` holds
the members, the shared-knowledge records, collaboration patterns and learning
records.  Shared knowledge points at entries of the execution knowledge base
by id; the entries themselves stay in ``knowledge/knowledge-base.json``.

The team document has its own lock file.  Calls into the knowledge base are
made while holding it, never the other way round.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from filelock import FileLock, Timeout
from loguru import logger

from ..constants import DEFAULT_TEAM_ID, LOCK_TIMEOUT, TEAM_DIR
from ..errors import StorageError, TeamMemberNotFoundError, TeamRecordNotFoundError, ValidationError
from ..io_utils import _atomic_write_json, _load_data_strict
from ..schemas import LearningRecordSpec, TeamMemberSpec, parse_model
from ..utils import _now_iso
from .model import (
    CollaborationPattern,
    CollaborationType,
    KnowledgeEntry,
    KnowledgeRating,
    LearningRecord,
    LearningType,
    SharedKnowledge,
    TeamMember,
    TeamRole,
    Visibility,
)
from .store import ExecutionMemoryStore, _coerce

TEAM_VERSION = 1
CONTRIBUTION_POINTS = 10
MIN_RELEVANCE = 2.0
RECOMMEND_MIN_SUCCESS_RATE = 0.6

_TEAM_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

KnowledgeLike = Union[str, KnowledgeEntry, dict[str, Any]]


@dataclass
class SharedKnowledgeMatch:
    shared: SharedKnowledge
    knowledge: KnowledgeEntry
    relevance: float
    average_rating: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "shared": self.shared.to_dict(),
            "knowledge": self.knowledge.to_dict(),
            "relevance": round(self.relevance, 3),
            "average_rating": round(self.average_rating, 3),
        }


@dataclass
class _TeamState:
    members: list[TeamMember] = field(default_factory=list)
    shared: list[SharedKnowledge] = field(default_factory=list)
    patterns: list[CollaborationPattern] = field(default_factory=list)
    learning: list[LearningRecord] = field(default_factory=list)

    def member(self, member_id: str) -> TeamMember:
        for m in self.members:
            if m.member_id == member_id:
                return m
        raise TeamMemberNotFoundError(member_id)

    def shared_entry(self, shared_id: str) -> SharedKnowledge:
        for s in self.shared:
            if s.shared_id == shared_id:
                return s
        raise TeamRecordNotFoundError(shared_id, f"Shared knowledge not found: {shared_id}")

    def learning_record(self, record_id: str) -> LearningRecord:
        for r in self.learning:
            if r.record_id == record_id:
                return r
        raise TeamRecordNotFoundError(record_id, f"Learning record not found: {record_id}")


def _role_list(values: Optional[Iterable[Any]]) -> list[TeamRole]:
    roles: list[TeamRole] = []
    for v in values or []:
        role = _coerce(TeamRole, v, "team role")
        if role not in roles:
            roles.append(role)
    return roles


class TeamMemoryStore:
    """Share knowledge-base entries with a team and keep the team's experience.

    Parameters
    ----------
    memory_dir:
        Path to the ``.task_chain/memory/`` directory.
    team_id:
        Name of the team document; letters, digits, ``_`` and ``-`` only.
    memory:
        Knowledge base the shared entries live in.  Defaults to one over
        *memory_dir*.
    """

    def __init__(
        self,
        memory_dir: Path,
        team_id: str = DEFAULT_TEAM_ID,
        memory: Optional[ExecutionMemoryStore] = None,
        lock_timeout: float = LOCK_TIMEOUT,
    ) -> None:
        if not _TEAM_ID.match(team_id or ""):
            raise ValidationError(f"Invalid team id '{team_id}'")
        self.team_id = team_id
        self.memory = memory or ExecutionMemoryStore(memory_dir)
        self._dir = memory_dir / TEAM_DIR
        self._path = self._dir / f"{team_id}.json"
        self._lock_path = self._dir / f"{team_id}.lock"
        self._lock_timeout = lock_timeout
        self._lock = FileLock(str(self._lock_path), timeout=lock_timeout)

    # ------------------------------------------------------------------
    # Document
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

    def _load(self) -> _TeamState:
        data = _load_data_strict(self._path, {})
        return _TeamState(
            members=[TeamMember.from_dict(m) for m in data.get("members") or []],
            shared=[SharedKnowledge.from_dict(s) for s in data.get("shared_knowledge") or []],
            patterns=[CollaborationPattern.from_dict(p) for p in data.get("collaboration_patterns") or []],
            learning=[LearningRecord.from_dict(r) for r in data.get("learning") or []],
        )

    def _save(self, state: _TeamState) -> None:
        payload = {
            "version": TEAM_VERSION,
            "team_id": self.team_id,
            "updated_at": _now_iso(),
            "members": [m.to_dict() for m in state.members],
            "shared_knowledge": [s.to_dict() for s in state.shared],
            "collaboration_patterns": [p.to_dict() for p in state.patterns],
            "learning": [r.to_dict() for r in state.learning],
        }
        _atomic_write_json(self._path, payload)

    @contextmanager
    def _open(self) -> Iterator[_TeamState]:
        """Load the team document for changes; saved when the block exits cleanly."""
        with self._locked():
            state = self._load()
            yield state
            self._save(state)

    def _read(self) -> _TeamState:
        with self._locked():
            return self._load()

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def register_member(self, member: Union[TeamMember, dict[str, Any]]) -> TeamMember:
        if not isinstance(member, TeamMember):
            spec = parse_model(TeamMemberSpec, member)
            member = TeamMember(
                name=spec.name,
                role=TeamRole(spec.role),
                expertise=list(spec.expertise),
                email=spec.email,
            )
            if spec.id:
                member.member_id = spec.id
        with self._open() as state:
            if any(m.member_id == member.member_id for m in state.members):
                raise ValidationError(f"Team member {member.member_id} is already registered")
            state.members.append(member)
        logger.info("Team {}: registered {} ({})", self.team_id, member.member_id, member.role.value)
        return member

    def get_member(self, member_id: str) -> TeamMember:
        return self._read().member(member_id)

    def list_members(self) -> list[TeamMember]:
        return self._read().members

    # ------------------------------------------------------------------
    # Shared knowledge
    # ------------------------------------------------------------------

    def share_knowledge(
        self,
        knowledge: KnowledgeLike,
        contributor_id: str,
        visibility: Union[str, Visibility] = Visibility.TEAM,
        applicable_roles: Optional[Iterable[Any]] = None,
    ) -> SharedKnowledge:
        """Share a knowledge-base entry with the team.

        *knowledge* is either the id of an existing entry or a new entry, which
        is recorded in the knowledge base first.  Applicable roles default to
        the contributor's role, and the contributor earns contribution points.
        """
        vis = _coerce(Visibility, visibility, "visibility")
        roles = _role_list(applicable_roles)
        with self._open() as state:
            contributor = state.member(contributor_id)
            if isinstance(knowledge, str):
                entry = self.memory.get_knowledge(knowledge)
            else:
                entry = self.memory.record_knowledge(knowledge)
            if any(s.knowledge_id == entry.id for s in state.shared):
                raise ValidationError(f"Knowledge {entry.id} is already shared with team {self.team_id}")
            shared = SharedKnowledge(
                knowledge_id=entry.id,
                contributor_id=contributor.member_id,
                visibility=vis,
                applicable_roles=roles or [contributor.role],
                tags=list(entry.tags),
            )
            state.shared.append(shared)
            contributor.contribution_score += CONTRIBUTION_POINTS
        logger.info("Team {}: {} shared {} ({})", self.team_id, contributor_id, entry.id, vis.value)
        return shared

    def get_shared_knowledge(
        self,
        requester_role: Union[str, TeamRole],
        technologies: Optional[list[str]] = None,
        project_type: Optional[str] = None,
        task_type: Optional[str] = None,
    ) -> list[SharedKnowledgeMatch]:
        """Shared entries relevant to someone in *requester_role*.

        Role-specific entries are hidden from other roles.  Relevance adds 3 for
        a matching role, 2 per shared technology, 2 for the task type, 1 for the
        project type and the average rating; entries scoring 2 or less are
        dropped.  Superseded entries are skipped.  Results are ordered by
        average rating plus a tenth of the usage count.
        """
        role = _coerce(TeamRole, requester_role, "team role")
        techs = {t.lower() for t in technologies or [] if t}
        state = self._read()
        entries = {e.id: e for e in self.memory.list_knowledge()}
        superseded = {e.supersedes for e in entries.values() if e.supersedes}

        matches: list[SharedKnowledgeMatch] = []
        for shared in state.shared:
            entry = entries.get(shared.knowledge_id)
            if entry is None:
                logger.warning(
                    "Team {}: shared {} points at missing knowledge {}",
                    self.team_id,
                    shared.shared_id,
                    shared.knowledge_id,
                )
                continue
            if entry.id in superseded:
                continue
            if shared.visibility == Visibility.ROLE_SPECIFIC and role not in shared.applicable_roles:
                continue
            rating = shared.average_rating(entry.confidence)
            score = rating
            if role in shared.applicable_roles:
                score += 3
            score += 2 * len(techs & {t.lower() for t in entry.context.technologies})
            if task_type and task_type in entry.applicability.task_types:
                score += 2
            if project_type and project_type in entry.applicability.project_types:
                score += 1
            if score > MIN_RELEVANCE:
                matches.append(SharedKnowledgeMatch(shared, entry, score, rating))

        matches.sort(key=lambda m: m.average_rating + m.shared.usage_count * 0.1, reverse=True)
        return matches

    def record_usage(self, shared_id: str) -> SharedKnowledge:
        with self._open() as state:
            shared = state.shared_entry(shared_id)
            shared.usage_count += 1
        return shared

    def rate_knowledge(
        self,
        shared_id: str,
        rater_id: str,
        rating: float,
        comment: Optional[str] = None,
    ) -> float:
        """Rate a shared entry from 1 to 5, replacing the rater's earlier rating.

        Returns the new average rating.
        """
        if not 1 <= rating <= 5:
            raise ValidationError(f"Rating must be within [1, 5], got {rating}")
        if not rater_id or not rater_id.strip():
            raise ValidationError("A rating needs a rater id")
        with self._open() as state:
            shared = state.shared_entry(shared_id)
            shared.ratings = [r for r in shared.ratings if r.rater_id != rater_id]
            shared.ratings.append(KnowledgeRating(rater_id=rater_id, rating=float(rating), comment=comment))
        average = shared.average_rating(0.0)
        logger.debug("Team {}: {} rated {} -> average {:.2f}", self.team_id, rater_id, shared_id, average)
        return average

    # ------------------------------------------------------------------
    # Collaboration patterns
    # ------------------------------------------------------------------

    def record_collaboration(
        self,
        name: str,
        roles: Iterable[Any],
        success: bool,
        description: str = "",
        pattern_type: Union[str, CollaborationType] = CollaborationType.TEAM_COLLABORATION,
        workflow: Optional[list[str]] = None,
    ) -> CollaborationPattern:
        """Record one use of a collaboration pattern.

        A pattern is identified by its name and set of roles; repeated uses
        update its usage count and running success rate.
        """
        if not name or not name.strip():
            raise ValidationError("Collaboration pattern name must be non-empty")
        role_list = sorted(_role_list(roles), key=lambda r: r.value)
        if not role_list:
            raise ValidationError("A collaboration pattern needs at least one role")
        kind = _coerce(CollaborationType, pattern_type, "collaboration type")
        with self._open() as state:
            for pattern in state.patterns:
                if pattern.name == name.strip() and set(pattern.roles) == set(role_list):
                    pattern.usage_count += 1
                    hits = pattern.success_rate * (pattern.usage_count - 1) + (1 if success else 0)
                    pattern.success_rate = hits / pattern.usage_count
                    pattern.last_used = _now_iso()
                    if description and description != pattern.description:
                        pattern.improvements.append(description)
                    return pattern
            pattern = CollaborationPattern(
                name=name.strip(),
                description=description,
                roles=role_list,
                type=kind,
                workflow=list(workflow or []),
                success_rate=1.0 if success else 0.0,
                usage_count=1,
            )
            state.patterns.append(pattern)
        return pattern

    def recommend_collaboration_patterns(self, roles: Iterable[Any]) -> list[CollaborationPattern]:
        """Patterns covering every role in *roles* that succeed more than 60% of the time."""
        wanted = set(_role_list(roles))
        patterns = [
            p for p in self._read().patterns
            if wanted <= set(p.roles) and p.success_rate > RECOMMEND_MIN_SUCCESS_RATE
        ]
        patterns.sort(key=lambda p: p.success_rate * 0.7 + (p.usage_count / 100) * 0.3, reverse=True)
        return patterns

    # ------------------------------------------------------------------
    # Learning records
    # ------------------------------------------------------------------

    def record_learning(self, record: Union[LearningRecord, dict[str, Any]]) -> LearningRecord:
        if not isinstance(record, LearningRecord):
            spec = parse_model(LearningRecordSpec, record)
            record = LearningRecord(
                project_id=spec.project_id,
                type=LearningType(spec.type),
                title=spec.title,
                description=spec.description,
                roles=[TeamRole(r) for r in dict.fromkeys(spec.roles)],
                technologies=list(spec.technologies),
                project_phase=spec.project_phase,
                complexity=spec.complexity,
                lessons=list(spec.lessons),
                recommendations=list(spec.recommendations),
                created_by=spec.created_by,
            )
        with self._open() as state:
            state.learning.append(record)
        logger.info("Team {}: recorded {} learning '{}'", self.team_id, record.type.value, record.title)
        return record

    def verify_learning(self, record_id: str, verifier_id: str) -> LearningRecord:
        with self._open() as state:
            state.member(verifier_id)
            record = state.learning_record(record_id)
            if verifier_id not in record.verified_by:
                record.verified_by.append(verifier_id)
        return record

    def get_learning(
        self,
        learning_type: Optional[Union[str, LearningType]] = None,
        roles: Optional[Iterable[Any]] = None,
        technologies: Optional[list[str]] = None,
        verified: Optional[bool] = None,
    ) -> list[LearningRecord]:
        """Learning records matching every given filter, newest first."""
        wanted_type = _coerce(LearningType, learning_type, "learning type") if learning_type else None
        wanted_roles = set(_role_list(roles))
        techs = {t.lower() for t in technologies or [] if t}
        records = []
        for r in self._read().learning:
            if wanted_type and r.type != wanted_type:
                continue
            if wanted_roles and not wanted_roles & set(r.roles):
                continue
            if techs and not techs & {t.lower() for t in r.technologies}:
                continue
            if verified is not None and r.verified != verified:
                continue
            records.append(r)
        # ties keep the later record first
        return sorted(reversed(records), key=lambda r: r.created_at, reverse=True)
