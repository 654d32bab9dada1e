from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from devpipe import __version__
from devpipe.adapters.completion import CompletionBus
from devpipe.adapters.headless import HeadlessStrategy
from devpipe.domain.models import Feature, Role, Task, Transition
from devpipe.repository import InMemoryPipelineStore
from devpipe.scheduler import Scheduler
from devpipe.service import CreateFeatureInput, InputValidationError, NotFoundError, PipelineService

_log = logging.getLogger(__name__)


class CreateFeatureRequest(BaseModel):
    description: str = Field(min_length=1, max_length=1000)
    priority: Literal['low', 'normal', 'high', 'critical'] = Field(default='normal')
    status: Literal['pending', 'in_progress', 'complete', 'failed'] | None = Field(default=None)
    metadata: dict[str, Any] | None = Field(default=None)
    skip_initial_task: bool = Field(default=False)


class PriorityRequest(BaseModel):
    priority: Literal['low', 'normal', 'high', 'critical']


class CompletionRequest(BaseModel):
    status: Literal['complete', 'failed'] = Field(default='complete')
    output: dict[str, Any]


class ProgressRequest(BaseModel):
    progress: str = Field(min_length=1, max_length=4000)
    current_step: str | None = Field(default=None, max_length=400)
    percent_complete: float | None = Field(default=None, ge=0, le=100)


class TaskResponse(BaseModel):
    id: int
    feature_id: str
    role: str
    description: str
    status: str
    attempts: int
    created_at: str
    started_at: str | None
    completed_at: str | None
    output: Any = None
    error: str | None


class FeatureResponse(BaseModel):
    id: str
    description: str
    status: str
    priority: str
    created_at: str
    updated_at: str
    completed_at: str | None
    metadata: dict[str, Any]


class FeatureDetailResponse(FeatureResponse):
    tasks: list[TaskResponse]


class TransitionResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    from_state: str | None
    to_state: str
    reason: str | None
    actor: str
    created_at: str


class CompletionResponse(BaseModel):
    task_id: int
    feature_id: str
    status: str
    delivered: bool


class DevelopmentStatusResponse(BaseModel):
    running: bool
    paused: bool
    development_mode: bool
    running_tasks: int
    pending_tasks: int


@dataclass
class AppState:
    service: PipelineService


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        feature_id=task.feature_id,
        role=task.role.value,
        description=task.description,
        status=task.status.value,
        attempts=task.attempts,
        created_at=_iso(task.created_at),
        started_at=_iso(task.started_at),
        completed_at=_iso(task.completed_at),
        output=task.output,
        error=task.error,
    )


def _feature_fields(feature: Feature) -> dict[str, Any]:
    return {
        'id': feature.id,
        'description': feature.description,
        'status': feature.status.value,
        'priority': feature.priority.value,
        'created_at': _iso(feature.created_at),
        'updated_at': _iso(feature.updated_at),
        'completed_at': _iso(feature.completed_at),
        'metadata': dict(feature.metadata),
    }


def _to_transition_response(row: Transition) -> TransitionResponse:
    return TransitionResponse(
        id=row.id,
        entity_type=row.entity_type.value,
        entity_id=row.entity_id,
        from_state=row.from_state,
        to_state=row.to_state,
        reason=row.reason,
        actor=row.actor.value,
        created_at=_iso(row.created_at),
    )


def _default_service() -> PipelineService:
    store = InMemoryPipelineStore()
    bus = CompletionBus()
    strategy = HeadlessStrategy(dry_run=True)
    scheduler = Scheduler(store=store, strategies={role: strategy for role in Role})
    return PipelineService(store=store, scheduler=scheduler, completion_bus=bus)


def create_app(*, service: PipelineService | None = None, manage_scheduler: bool = True) -> FastAPI:
    if service is None:
        service = _default_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_scheduler:
            service.scheduler.start()
        try:
            yield
        finally:
            if manage_scheduler:
                service.scheduler.stop()

    app = FastAPI(title='devpipe api', version=__version__, lifespan=lifespan)
    app.state.container = AppState(service=service)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {'code': code, 'message': message}
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        first = details[0] if details else {}
        return JSONResponse(
            status_code=400,
            content=_error_payload(
                message=str(first.get('msg') or 'invalid request body'),
                field=_field_from_loc(first.get('loc')),
            ),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(status_code=400, content=_error_payload(message=str(exc), field=exc.field, code=exc.code))

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):  # noqa: ARG001
        return JSONResponse(status_code=404, content=_error_payload(message=str(exc), code='not_found'))

    def get_service() -> PipelineService:
        return app.state.container.service

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/features', response_model=FeatureResponse, status_code=201)
    def create_feature(payload: CreateFeatureRequest, service: PipelineService = Depends(get_service)) -> FeatureResponse:
        feature = service.create_feature(
            CreateFeatureInput(
                description=payload.description,
                priority=payload.priority,
                status=payload.status,
                metadata=payload.metadata,
                skip_initial_task=payload.skip_initial_task,
            )
        )
        return FeatureResponse(**_feature_fields(feature))

    @app.get('/api/features', response_model=list[FeatureResponse])
    def list_features(
        service: PipelineService = Depends(get_service),
        status: str | None = Query(default=None),
        priority: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> list[FeatureResponse]:
        rows = service.list_features(status=status, priority=priority, limit=limit, offset=offset)
        return [FeatureResponse(**_feature_fields(row)) for row in rows]

    @app.get('/api/features/{feature_id}', response_model=FeatureDetailResponse)
    def get_feature(feature_id: str, service: PipelineService = Depends(get_service)) -> FeatureDetailResponse:
        detail = service.get_feature(feature_id)
        if detail is None:
            raise HTTPException(status_code=404, detail='feature not found')
        return FeatureDetailResponse(
            **_feature_fields(detail.feature),
            tasks=[_to_task_response(t) for t in detail.tasks],
        )

    @app.post('/api/features/{feature_id}/priority', response_model=FeatureResponse)
    def set_priority(
        feature_id: str,
        payload: PriorityRequest,
        service: PipelineService = Depends(get_service),
    ) -> FeatureResponse:
        feature = service.set_priority(feature_id, payload.priority)
        return FeatureResponse(**_feature_fields(feature))

    @app.get('/api/features/{feature_id}/transitions', response_model=list[TransitionResponse])
    def feature_transitions(feature_id: str, service: PipelineService = Depends(get_service)) -> list[TransitionResponse]:
        if service.get_feature(feature_id) is None:
            raise HTTPException(status_code=404, detail='feature not found')
        return [_to_transition_response(r) for r in service.list_transitions('feature', feature_id)]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: int, service: PipelineService = Depends(get_service)) -> TaskResponse:
        task = service.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail='task not found')
        return _to_task_response(task)

    @app.get('/api/tasks/{task_id}/transitions', response_model=list[TransitionResponse])
    def task_transitions(task_id: int, service: PipelineService = Depends(get_service)) -> list[TransitionResponse]:
        if service.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail='task not found')
        return [_to_transition_response(r) for r in service.list_transitions('task', task_id)]

    @app.post('/api/tasks/{task_id}/completion', response_model=CompletionResponse)
    def report_completion(
        task_id: int,
        payload: CompletionRequest,
        service: PipelineService = Depends(get_service),
    ) -> CompletionResponse:
        ack = service.report_task_completion(task_id, output=payload.output, status=payload.status)
        return CompletionResponse(task_id=ack.task_id, feature_id=ack.feature_id, status=ack.status, delivered=ack.delivered)

    @app.post('/api/tasks/{task_id}/progress', response_model=TaskResponse)
    def report_progress(
        task_id: int,
        payload: ProgressRequest,
        service: PipelineService = Depends(get_service),
    ) -> TaskResponse:
        task = service.report_task_progress(
            task_id,
            progress=payload.progress,
            current_step=payload.current_step,
            percent_complete=payload.percent_complete,
        )
        return _to_task_response(task)

    @app.post('/api/development/start', response_model=DevelopmentStatusResponse)
    def start_development(service: PipelineService = Depends(get_service)) -> DevelopmentStatusResponse:
        return DevelopmentStatusResponse(**service.start_development())

    @app.post('/api/development/stop', response_model=DevelopmentStatusResponse)
    def stop_development(service: PipelineService = Depends(get_service)) -> DevelopmentStatusResponse:
        return DevelopmentStatusResponse(**service.stop_development())

    @app.get('/api/development/status', response_model=DevelopmentStatusResponse)
    def development_status(service: PipelineService = Depends(get_service)) -> DevelopmentStatusResponse:
        return DevelopmentStatusResponse(**service.development_status())

    @app.post('/api/orchestrator/pause', response_model=DevelopmentStatusResponse)
    def pause(service: PipelineService = Depends(get_service)) -> DevelopmentStatusResponse:
        return DevelopmentStatusResponse(**service.pause())

    @app.post('/api/orchestrator/resume', response_model=DevelopmentStatusResponse)
    def resume(service: PipelineService = Depends(get_service)) -> DevelopmentStatusResponse:
        return DevelopmentStatusResponse(**service.resume())

    @app.get('/api/progress')
    def progress(service: PipelineService = Depends(get_service)) -> dict:
        return service.get_progress()

    @app.get('/api/metrics')
    def metrics(service: PipelineService = Depends(get_service)) -> dict:
        return service.get_metrics()

    @app.get('/api/audit')
    def audit(
        service: PipelineService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[dict]:
        return [
            {
                'id': row.id,
                'action': row.action,
                'entity_type': row.entity_type,
                'entity_id': row.entity_id,
                'actor': row.actor,
                'details': row.details,
                'created_at': _iso(row.created_at),
            }
            for row in service.list_audit(limit=limit)
        ]

    return app
