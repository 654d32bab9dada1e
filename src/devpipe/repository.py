from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Iterable, Protocol
from uuid import uuid4

from devpipe.domain.models import (
    Actor,
    ArchitectureDecision,
    AuditEntry,
    Context,
    ContextType,
    EntityType,
    Feature,
    FeatureStatus,
    Priority,
    Role,
    Task,
    TaskStatus,
    TechnicalDiscovery,
    Transition,
    UserStory,
)

FEATURE_UPDATE_FIELDS = frozenset({'status', 'priority', 'description', 'metadata', 'completed_at'})
TASK_UPDATE_FIELDS = frozenset({'status', 'description', 'started_at', 'completed_at', 'output', 'error'})


def utc_now() -> datetime:
    """Current UTC time truncated to millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def from_epoch_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def normalize_statuses(status: TaskStatus | str | Iterable[TaskStatus | str] | None) -> set[TaskStatus] | None:
    if status is None:
        return None
    if isinstance(status, (str, TaskStatus)):
        return {TaskStatus(status)}
    return {TaskStatus(item) for item in status}


def check_update_fields(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValueError(f'unsupported update fields: {", ".join(unknown)}')


class PipelineStore(Protocol):
    def create_feature(
        self,
        *,
        description: str,
        priority: Priority | str = Priority.NORMAL,
        status: FeatureStatus | str = FeatureStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> Feature:
        ...

    def get_feature(self, feature_id: str) -> Feature | None:
        ...

    def list_features(
        self,
        *,
        status: FeatureStatus | str | None = None,
        priority: Priority | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Feature]:
        ...

    def update_feature(self, feature_id: str, **changes: Any) -> Feature:
        ...

    def create_task(
        self,
        *,
        feature_id: str,
        role: Role | str,
        description: str,
        status: TaskStatus | str = TaskStatus.PENDING,
    ) -> Task:
        ...

    def get_task(self, task_id: int) -> Task | None:
        ...

    def list_tasks(
        self,
        *,
        feature_id: str | None = None,
        role: Role | str | None = None,
        status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        ...

    def list_pending_tasks(self, limit: int = 100) -> list[Task]:
        ...

    def update_task(self, task_id: int, **changes: Any) -> Task:
        ...

    def increment_attempts(self, task_id: int) -> Task:
        ...

    def add_context(
        self,
        *,
        feature_id: str,
        type: ContextType | str,
        content: str,
        author: str | None = None,
    ) -> Context:
        ...

    def list_contexts(self, feature_id: str) -> list[Context]:
        ...

    def record_transition(
        self,
        *,
        entity_type: EntityType | str,
        entity_id: str | int,
        from_state: str | None,
        to_state: str,
        reason: str | None = None,
        actor: Actor | str = Actor.SYSTEM,
        metadata: dict[str, Any] | None = None,
    ) -> Transition:
        ...

    def list_transitions(self, entity_type: EntityType | str, entity_id: str | int) -> list[Transition]:
        ...

    def add_audit(
        self,
        *,
        action: str,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        ...

    def list_audit(self, *, limit: int = 100) -> list[AuditEntry]:
        ...

    def add_discovery(self, *, feature_id: str, type: str, description: str, impact: str) -> TechnicalDiscovery:
        ...

    def list_discoveries(self, feature_id: str) -> list[TechnicalDiscovery]:
        ...

    def add_decision(
        self,
        *,
        feature_id: str,
        decision: str,
        rationale: str,
        alternatives: list[str] | None = None,
        consequences: str | None = None,
    ) -> ArchitectureDecision:
        ...

    def list_decisions(self, feature_id: str) -> list[ArchitectureDecision]:
        ...

    def add_user_story(
        self,
        *,
        feature_id: str,
        title: str,
        description: str,
        acceptance_criteria: list[str] | None = None,
        status: str = 'ready',
    ) -> UserStory:
        ...

    def list_user_stories(self, feature_id: str) -> list[UserStory]:
        ...

    def link_task_user_story(self, task_id: int, story_id: int) -> None:
        ...

    def list_user_stories_for_task(self, task_id: int) -> list[UserStory]:
        ...


class InMemoryPipelineStore:
    def __init__(self):
        self._lock = Lock()
        self.features: dict[str, Feature] = {}
        self.tasks: dict[int, Task] = {}
        self.contexts: list[Context] = []
        self.transitions: list[Transition] = []
        self.audit: list[AuditEntry] = []
        self.discoveries: list[TechnicalDiscovery] = []
        self.decisions: list[ArchitectureDecision] = []
        self.user_stories: dict[int, UserStory] = {}
        self.task_user_stories: list[tuple[int, int]] = []
        self._feature_seq = count(1)
        self._feature_order: dict[str, int] = {}
        self._task_ids = count(1)
        self._row_ids = count(1)

    def create_feature(
        self,
        *,
        description: str,
        priority: Priority | str = Priority.NORMAL,
        status: FeatureStatus | str = FeatureStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> Feature:
        now = utc_now()
        status = FeatureStatus(status)
        feature = Feature(
            id=str(uuid4()),
            description=description,
            status=status,
            priority=Priority(priority),
            created_at=now,
            updated_at=now,
            completed_at=now if status == FeatureStatus.COMPLETE else None,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self.features[feature.id] = feature
            # Creation order breaks ties between rows created in the same millisecond.
            self._feature_order[feature.id] = next(self._feature_seq)
        return feature

    def get_feature(self, feature_id: str) -> Feature | None:
        with self._lock:
            return self.features.get(feature_id)

    def list_features(
        self,
        *,
        status: FeatureStatus | str | None = None,
        priority: Priority | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Feature]:
        with self._lock:
            rows = list(self.features.values())
            rows.sort(key=lambda f: (f.created_at, self._feature_order.get(f.id, 0)), reverse=True)
        if status is not None:
            rows = [f for f in rows if f.status == FeatureStatus(status)]
        if priority is not None:
            rows = [f for f in rows if f.priority == Priority(priority)]
        return _page(rows, limit=limit, offset=offset)

    def update_feature(self, feature_id: str, **changes: Any) -> Feature:
        check_update_fields(changes, FEATURE_UPDATE_FIELDS)
        with self._lock:
            current = self.features.get(feature_id)
            if current is None:
                raise KeyError(f'Feature not found: {feature_id}')
            if 'status' in changes:
                changes['status'] = FeatureStatus(changes['status'])
                if changes['status'] == FeatureStatus.COMPLETE and 'completed_at' not in changes:
                    changes['completed_at'] = utc_now()
            if 'priority' in changes:
                changes['priority'] = Priority(changes['priority'])
            if 'metadata' in changes:
                changes['metadata'] = dict(changes['metadata'] or {})
            updated = replace(current, updated_at=utc_now(), **changes)
            self.features[feature_id] = updated
            return updated

    def create_task(
        self,
        *,
        feature_id: str,
        role: Role | str,
        description: str,
        status: TaskStatus | str = TaskStatus.PENDING,
    ) -> Task:
        with self._lock:
            task = Task(
                id=next(self._task_ids),
                feature_id=feature_id,
                role=Role(role),
                description=description,
                status=TaskStatus(status),
                attempts=0,
                created_at=utc_now(),
            )
            self.tasks[task.id] = task
            return task

    def get_task(self, task_id: int) -> Task | None:
        with self._lock:
            return self.tasks.get(int(task_id))

    def list_tasks(
        self,
        *,
        feature_id: str | None = None,
        role: Role | str | None = None,
        status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        statuses = normalize_statuses(status)
        with self._lock:
            rows = sorted(self.tasks.values(), key=lambda t: (t.created_at, t.id))
        if feature_id is not None:
            rows = [t for t in rows if t.feature_id == feature_id]
        if role is not None:
            rows = [t for t in rows if t.role == Role(role)]
        if statuses is not None:
            rows = [t for t in rows if t.status in statuses]
        return _page(rows, limit=limit, offset=offset)

    def list_pending_tasks(self, limit: int = 100) -> list[Task]:
        return self.list_tasks(status=TaskStatus.PENDING, limit=limit)

    def update_task(self, task_id: int, **changes: Any) -> Task:
        check_update_fields(changes, TASK_UPDATE_FIELDS)
        with self._lock:
            current = self.tasks.get(int(task_id))
            if current is None:
                raise KeyError(f'Task not found: {task_id}')
            if 'status' in changes:
                changes['status'] = TaskStatus(changes['status'])
            updated = replace(current, **changes)
            self.tasks[updated.id] = updated
            return updated

    def increment_attempts(self, task_id: int) -> Task:
        with self._lock:
            current = self.tasks.get(int(task_id))
            if current is None:
                raise KeyError(f'Task not found: {task_id}')
            updated = replace(current, attempts=current.attempts + 1)
            self.tasks[updated.id] = updated
            return updated

    def add_context(
        self,
        *,
        feature_id: str,
        type: ContextType | str,
        content: str,
        author: str | None = None,
    ) -> Context:
        with self._lock:
            row = Context(
                id=next(self._row_ids),
                feature_id=feature_id,
                type=ContextType(type),
                content=content,
                author=author,
                created_at=utc_now(),
            )
            self.contexts.append(row)
            return row

    def list_contexts(self, feature_id: str) -> list[Context]:
        with self._lock:
            return [c for c in self.contexts if c.feature_id == feature_id]

    def record_transition(
        self,
        *,
        entity_type: EntityType | str,
        entity_id: str | int,
        from_state: str | None,
        to_state: str,
        reason: str | None = None,
        actor: Actor | str = Actor.SYSTEM,
        metadata: dict[str, Any] | None = None,
    ) -> Transition:
        with self._lock:
            row = Transition(
                id=next(self._row_ids),
                entity_type=EntityType(entity_type),
                entity_id=str(entity_id),
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                actor=Actor(actor),
                created_at=utc_now(),
                metadata=dict(metadata) if metadata else None,
            )
            self.transitions.append(row)
            return row

    def list_transitions(self, entity_type: EntityType | str, entity_id: str | int) -> list[Transition]:
        kind = EntityType(entity_type)
        key = str(entity_id)
        with self._lock:
            return [t for t in self.transitions if t.entity_type == kind and t.entity_id == key]

    def add_audit(
        self,
        *,
        action: str,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        with self._lock:
            row = AuditEntry(
                id=next(self._row_ids),
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                actor=actor,
                details=dict(details) if details else None,
                created_at=utc_now(),
            )
            self.audit.append(row)
            return row

    def list_audit(self, *, limit: int = 100) -> list[AuditEntry]:
        with self._lock:
            return list(reversed(self.audit))[:limit]

    def add_discovery(self, *, feature_id: str, type: str, description: str, impact: str) -> TechnicalDiscovery:
        with self._lock:
            row = TechnicalDiscovery(
                id=next(self._row_ids),
                feature_id=feature_id,
                type=type,
                description=description,
                impact=impact,
                created_at=utc_now(),
            )
            self.discoveries.append(row)
            return row

    def list_discoveries(self, feature_id: str) -> list[TechnicalDiscovery]:
        with self._lock:
            return [d for d in self.discoveries if d.feature_id == feature_id]

    def add_decision(
        self,
        *,
        feature_id: str,
        decision: str,
        rationale: str,
        alternatives: list[str] | None = None,
        consequences: str | None = None,
    ) -> ArchitectureDecision:
        with self._lock:
            row = ArchitectureDecision(
                id=next(self._row_ids),
                feature_id=feature_id,
                decision=decision,
                rationale=rationale,
                alternatives=list(alternatives or []),
                consequences=consequences,
                created_at=utc_now(),
            )
            self.decisions.append(row)
            return row

    def list_decisions(self, feature_id: str) -> list[ArchitectureDecision]:
        with self._lock:
            return [d for d in self.decisions if d.feature_id == feature_id]

    def add_user_story(
        self,
        *,
        feature_id: str,
        title: str,
        description: str,
        acceptance_criteria: list[str] | None = None,
        status: str = 'ready',
    ) -> UserStory:
        with self._lock:
            row = UserStory(
                id=next(self._row_ids),
                feature_id=feature_id,
                title=title,
                description=description,
                acceptance_criteria=list(acceptance_criteria or []),
                status=status,
                created_at=utc_now(),
            )
            self.user_stories[row.id] = row
            return row

    def list_user_stories(self, feature_id: str) -> list[UserStory]:
        with self._lock:
            return [s for s in self.user_stories.values() if s.feature_id == feature_id]

    def link_task_user_story(self, task_id: int, story_id: int) -> None:
        with self._lock:
            if int(task_id) not in self.tasks:
                raise KeyError(f'Task not found: {task_id}')
            if int(story_id) not in self.user_stories:
                raise KeyError(f'User story not found: {story_id}')
            link = (int(task_id), int(story_id))
            if link not in self.task_user_stories:
                self.task_user_stories.append(link)

    def list_user_stories_for_task(self, task_id: int) -> list[UserStory]:
        with self._lock:
            return [self.user_stories[s] for t, s in self.task_user_stories if t == int(task_id)]


def _page(rows: list, *, limit: int | None, offset: int) -> list:
    start = max(0, int(offset or 0))
    if limit is None:
        return rows[start:]
    return rows[start:start + max(0, int(limit))]
