from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class FeatureStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETE = 'complete'
    FAILED = 'failed'


class TaskStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETE = 'complete'
    FAILED = 'failed'


class Priority(str, Enum):
    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'
    CRITICAL = 'critical'


class Role(str, Enum):
    ARCHITECT = 'architect'
    DEVELOPER = 'developer'
    REVIEWER = 'reviewer'


class ContextType(str, Enum):
    ARCHITECTURE = 'architecture'
    IMPLEMENTATION = 'implementation'
    REVIEW = 'review'


class EntityType(str, Enum):
    FEATURE = 'feature'
    TASK = 'task'


class Actor(str, Enum):
    SYSTEM = 'system'
    USER = 'user'
    AI = 'ai'


CONTEXT_TYPE_BY_ROLE: dict[Role, ContextType] = {
    Role.ARCHITECT: ContextType.ARCHITECTURE,
    Role.DEVELOPER: ContextType.IMPLEMENTATION,
    Role.REVIEWER: ContextType.REVIEW,
}

PRIORITY_RANK: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


@dataclass(frozen=True)
class Feature:
    id: str
    description: str
    status: FeatureStatus
    priority: Priority
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_system(self) -> bool:
        return bool(self.metadata.get('system'))


@dataclass(frozen=True)
class Task:
    id: int
    feature_id: str
    role: Role
    description: str
    status: TaskStatus
    attempts: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: Any = None
    error: str | None = None


@dataclass(frozen=True)
class Context:
    id: int
    feature_id: str
    type: ContextType
    content: str
    author: str | None
    created_at: datetime


@dataclass(frozen=True)
class Transition:
    id: int
    entity_type: EntityType
    entity_id: str
    from_state: str | None
    to_state: str
    reason: str | None
    actor: Actor
    created_at: datetime
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class AuditEntry:
    id: int
    action: str
    entity_type: str | None
    entity_id: str | None
    actor: str | None
    details: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class TechnicalDiscovery:
    id: int
    feature_id: str
    type: str
    description: str
    impact: str
    created_at: datetime


@dataclass(frozen=True)
class ArchitectureDecision:
    id: int
    feature_id: str
    decision: str
    rationale: str
    alternatives: list[str]
    consequences: str | None
    created_at: datetime


@dataclass(frozen=True)
class UserStory:
    id: int
    feature_id: str
    title: str
    description: str
    acceptance_criteria: list[str]
    status: str
    created_at: datetime


_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.PENDING},
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.COMPLETE: set(),
}

_FEATURE_TRANSITIONS: dict[FeatureStatus, set[FeatureStatus]] = {
    FeatureStatus.PENDING: {FeatureStatus.IN_PROGRESS, FeatureStatus.FAILED},
    FeatureStatus.IN_PROGRESS: {FeatureStatus.COMPLETE, FeatureStatus.FAILED},
    FeatureStatus.COMPLETE: set(),
    FeatureStatus.FAILED: set(),
}


def can_transition(current: TaskStatus | FeatureStatus, target: TaskStatus | FeatureStatus) -> bool:
    if isinstance(current, TaskStatus):
        return TaskStatus(target) in _TASK_TRANSITIONS[current]
    return FeatureStatus(target) in _FEATURE_TRANSITIONS[FeatureStatus(current)]
