from devpipe.domain.events import EventType, TERMINAL_TASK_EVENT_TYPES, normalize_event_type
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
    can_transition,
)
from devpipe.domain.pipeline import PipelineGraph, build_pipeline

__all__ = [
    'Actor',
    'ArchitectureDecision',
    'AuditEntry',
    'Context',
    'ContextType',
    'EntityType',
    'EventType',
    'Feature',
    'FeatureStatus',
    'PipelineGraph',
    'Priority',
    'Role',
    'TERMINAL_TASK_EVENT_TYPES',
    'Task',
    'TaskStatus',
    'TechnicalDiscovery',
    'Transition',
    'UserStory',
    'build_pipeline',
    'can_transition',
    'normalize_event_type',
]
