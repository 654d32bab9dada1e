from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from devpipe.adapters.completion import CompletionBus
from devpipe.domain.events import EventType
from devpipe.domain.models import (
    Actor,
    EntityType,
    Feature,
    FeatureStatus,
    Priority,
    Task,
    TaskStatus,
    Transition,
)
from devpipe.repository import PipelineStore
from devpipe.scheduler import Scheduler

_log = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 1000
COMPLETION_STATUSES = ('complete', 'failed')


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class NotFoundError(KeyError):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class CreateFeatureInput:
    description: str
    priority: str = Priority.NORMAL.value
    status: str | None = None
    metadata: dict[str, Any] | None = None
    skip_initial_task: bool = False


@dataclass(frozen=True)
class FeatureDetail:
    feature: Feature
    tasks: list[Task]


@dataclass(frozen=True)
class CompletionAck:
    task_id: int
    feature_id: str
    status: str
    delivered: bool


class PipelineService:
    """Entry point for callers outside the scheduler loop.

    Writes that belong to the scheduler (task status changes after
    dispatch) are never made here; completion reports are handed to the
    waiting execution through the completion bus instead.
    """

    def __init__(self, *, store: PipelineStore, scheduler: Scheduler, completion_bus: CompletionBus):
        self.store = store
        self.scheduler = scheduler
        self.completion_bus = completion_bus

    # Features

    def create_feature(self, payload: CreateFeatureInput) -> Feature:
        description = str(payload.description or '').strip()
        if not description:
            raise InputValidationError('description is required', field='description')
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InputValidationError(
                f'description must be at most {MAX_DESCRIPTION_LENGTH} characters',
                field='description',
            )
        priority = self._normalize_priority(payload.priority)
        status = self._normalize_feature_status(payload.status)
        if payload.metadata is not None and not isinstance(payload.metadata, dict):
            raise InputValidationError('metadata must be an object', field='metadata')

        feature = self.store.create_feature(
            description=description,
            priority=priority,
            status=status,
            metadata=payload.metadata,
        )
        self.store.record_transition(
            entity_type=EntityType.FEATURE,
            entity_id=feature.id,
            from_state=None,
            to_state=feature.status.value,
            reason='feature created',
            actor=Actor.USER,
        )
        self.store.add_audit(
            action='feature-created',
            entity_type=EntityType.FEATURE.value,
            entity_id=feature.id,
            actor=Actor.USER.value,
            details={'priority': priority.value, 'status': status.value},
        )
        if not payload.skip_initial_task and status != FeatureStatus.COMPLETE:
            task = self.store.create_task(
                feature_id=feature.id,
                role=self.scheduler.pipeline.entry_role,
                description=f'Design architecture for: {description}',
            )
            self.store.record_transition(
                entity_type=EntityType.TASK,
                entity_id=task.id,
                from_state=None,
                to_state=TaskStatus.PENDING.value,
                reason='initial task',
                actor=Actor.USER,
            )
            self.scheduler.emit(EventType.TASK_CREATED, task_id=task.id, feature_id=feature.id, role=task.role.value)
        _log.info('feature_created feature_id=%s priority=%s', feature.id, priority.value)
        return feature

    def get_feature(self, feature_id: str) -> FeatureDetail | None:
        feature = self.store.get_feature(feature_id)
        if feature is None:
            return None
        return FeatureDetail(feature=feature, tasks=self.store.list_tasks(feature_id=feature.id))

    def list_features(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Feature]:
        return self.store.list_features(
            status=self._normalize_feature_status(status, field='status') if status else None,
            priority=self._normalize_priority(priority) if priority else None,
            limit=limit,
            offset=offset,
        )

    def set_priority(self, feature_id: str, priority: str) -> Feature:
        value = self._normalize_priority(priority)
        feature = self.store.get_feature(feature_id)
        if feature is None:
            raise NotFoundError(f'Feature not found: {feature_id}')
        updated = self.store.update_feature(feature.id, priority=value)
        self.store.add_audit(
            action='priority-changed',
            entity_type=EntityType.FEATURE.value,
            entity_id=feature.id,
            actor=Actor.USER.value,
            details={'from': feature.priority.value, 'to': value.value},
        )
        return updated

    def list_transitions(self, entity_type: str, entity_id: str | int) -> list[Transition]:
        try:
            kind = EntityType(str(entity_type or '').strip().lower())
        except ValueError as exc:
            raise InputValidationError('entity_type must be feature or task', field='entity_type') from exc
        return self.store.list_transitions(kind, entity_id)

    # Tasks

    def get_task(self, task_id: int) -> Task | None:
        return self.store.get_task(task_id)

    def report_task_completion(self, task_id: int, *, output: Any, status: str = 'complete') -> CompletionAck:
        value = str(status or '').strip().lower()
        if value not in COMPLETION_STATUSES:
            raise InputValidationError('status must be complete or failed', field='status')
        if not isinstance(output, dict):
            raise InputValidationError('output must be an object', field='output')
        task = self._require_running_task(task_id)
        delivered = self.completion_bus.publish(task.id, output, status=value)
        if not delivered:
            _log.warning('completion_not_awaited task_id=%s role=%s', task.id, task.role.value)
        self.store.add_audit(
            action='completion-reported',
            entity_type=EntityType.TASK.value,
            entity_id=task.id,
            actor=Actor.AI.value,
            details={'status': value, 'delivered': delivered},
        )
        return CompletionAck(task_id=task.id, feature_id=task.feature_id, status=value, delivered=delivered)

    def report_task_progress(
        self,
        task_id: int,
        *,
        progress: str,
        current_step: str | None = None,
        percent_complete: float | None = None,
    ) -> Task:
        text = str(progress or '').strip()
        if not text:
            raise InputValidationError('progress is required', field='progress')
        if percent_complete is not None and not (0 <= float(percent_complete) <= 100):
            raise InputValidationError('percent_complete must be between 0 and 100', field='percent_complete')
        task = self._require_running_task(task_id)
        details = {'progress': text, 'current_step': current_step, 'percent_complete': percent_complete}
        self.store.add_audit(
            action='progress-update',
            entity_type=EntityType.TASK.value,
            entity_id=task.id,
            actor=Actor.AI.value,
            details=details,
        )
        self.scheduler.emit(EventType.TASK_PROGRESS, task_id=task.id, feature_id=task.feature_id, **details)
        return task

    def _require_running_task(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f'Task not found: {task_id}')
        if task.status != TaskStatus.IN_PROGRESS:
            raise InputValidationError(
                f'Task {task.id} is not in progress (current status: {task.status.value})',
                field='task_id',
                code='task_not_in_progress',
            )
        return task

    # Scheduler control

    def start_development(self) -> dict[str, Any]:
        self.scheduler.start_development()
        return self.development_status()

    def stop_development(self) -> dict[str, Any]:
        self.scheduler.stop_development()
        return self.development_status()

    def pause(self) -> dict[str, Any]:
        self.scheduler.pause()
        return self.development_status()

    def resume(self) -> dict[str, Any]:
        self.scheduler.resume()
        return self.development_status()

    def development_status(self) -> dict[str, Any]:
        running = self.scheduler.running_tasks()
        return {
            'running': self.scheduler.is_running,
            'paused': self.scheduler.is_paused,
            'development_mode': self.scheduler.development_mode,
            'running_tasks': len(running),
            'pending_tasks': len(self.store.list_pending_tasks(limit=1000)),
        }

    def get_progress(self) -> dict[str, Any]:
        return self.scheduler.get_progress()

    def get_metrics(self) -> dict[str, Any]:
        return self.scheduler.get_metrics()

    def list_audit(self, *, limit: int = 100) -> list:
        return self.store.list_audit(limit=limit)

    # Normalizers

    @staticmethod
    def _normalize_priority(value: str | Priority | None) -> Priority:
        try:
            return Priority(str(getattr(value, 'value', value) or Priority.NORMAL.value).strip().lower())
        except ValueError as exc:
            allowed = ', '.join(p.value for p in Priority)
            raise InputValidationError(f'priority must be one of: {allowed}', field='priority') from exc

    @staticmethod
    def _normalize_feature_status(value: str | FeatureStatus | None, *, field: str = 'status') -> FeatureStatus:
        if value is None:
            return FeatureStatus.PENDING
        try:
            return FeatureStatus(str(getattr(value, 'value', value)).strip().lower())
        except ValueError as exc:
            allowed = ', '.join(s.value for s in FeatureStatus)
            raise InputValidationError(f'{field} must be one of: {allowed}', field=field) from exc
