from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    ARCHITECT_OUTPUT_PROCESSED = 'architect_output_processed'
    ARCHITECT_PROCESSING_ERROR = 'architect_processing_error'
    DEADLOCK_DETECTED = 'deadlock_detected'
    DEADLOCK_RESOLVED = 'deadlock_resolved'
    DEVELOPMENT_STARTED = 'development_started'
    DEVELOPMENT_STOPPED = 'development_stopped'
    ERROR = 'error'
    FEATURE_COMPLETED = 'feature_completed'
    FEATURE_FAILED = 'feature_failed'
    FEATURE_STARTED = 'feature_started'
    ORCHESTRATOR_PAUSED = 'orchestrator_paused'
    ORCHESTRATOR_RESUMED = 'orchestrator_resumed'
    ORCHESTRATOR_STARTED = 'orchestrator_started'
    ORCHESTRATOR_STOPPED = 'orchestrator_stopped'
    SELF_HEALING_FAILED = 'self_healing_failed'
    SELF_HEALING_TASK_CREATED = 'self_healing_task_created'
    TASK_COMPLETED = 'task_completed'
    TASK_CREATED = 'task_created'
    TASK_FAILED = 'task_failed'
    TASK_PROGRESS = 'task_progress'
    TASK_RECOVERED = 'task_recovered'
    TASK_RETRY_SCHEDULED = 'task_retry_scheduled'
    TASK_STARTED = 'task_started'
    TASK_TIMEOUT = 'task_timeout'
    WARNING = 'warning'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


TERMINAL_TASK_EVENT_TYPES = frozenset(
    {
        EventType.TASK_COMPLETED.value,
        EventType.TASK_FAILED.value,
        EventType.TASK_TIMEOUT.value,
    }
)
