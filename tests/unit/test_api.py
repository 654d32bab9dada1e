from __future__ import annotations

from fastapi.testclient import TestClient

from devpipe.adapters.base import ExecutionResult
from devpipe.adapters.completion import CompletionBus
from devpipe.api import create_app
from devpipe.domain.models import Role, TaskStatus
from devpipe.repository import InMemoryPipelineStore
from devpipe.scheduler import Scheduler
from devpipe.service import PipelineService


class FakeStrategy:
    def __init__(self, output):
        self.output = output

    def execute(self, role, task, context, *, timeout_seconds=None, prompt=None):
        return ExecutionResult(success=True, output=self.output, attempts=1)


def build_client() -> tuple[TestClient, PipelineService]:
    store = InMemoryPipelineStore()
    scheduler = Scheduler(
        store=store,
        strategies={
            Role.ARCHITECT: FakeStrategy({'design': {}}),
            Role.DEVELOPER: FakeStrategy({'filesCreated': []}),
            Role.REVIEWER: FakeStrategy({'approved': True}),
        },
        launcher=lambda fn, name: fn(),
    )
    service = PipelineService(store=store, scheduler=scheduler, completion_bus=CompletionBus())
    app = create_app(service=service, manage_scheduler=False)
    return TestClient(app), service


def test_healthz():
    client, _ = build_client()
    assert client.get('/healthz').json() == {'status': 'ok'}


def test_create_and_get_feature():
    client, _ = build_client()

    created = client.post('/api/features', json={'description': 'Add login', 'priority': 'high'})
    assert created.status_code == 201
    body = created.json()
    assert body['status'] == 'pending'
    assert body['priority'] == 'high'
    assert body['completed_at'] is None

    detail = client.get(f'/api/features/{body["id"]}').json()
    assert len(detail['tasks']) == 1
    assert detail['tasks'][0]['role'] == 'architect'
    assert detail['tasks'][0]['status'] == 'pending'

    listed = client.get('/api/features', params={'priority': 'high'}).json()
    assert [f['id'] for f in listed] == [body['id']]


def test_create_feature_validation_errors_are_400():
    client, _ = build_client()

    empty = client.post('/api/features', json={'description': ''})
    assert empty.status_code == 400
    assert empty.json()['code'] == 'validation_error'
    assert empty.json()['field'] == 'description'

    too_long = client.post('/api/features', json={'description': 'x' * 1001})
    assert too_long.status_code == 400

    bad_priority = client.post('/api/features', json={'description': 'ok', 'priority': 'urgent'})
    assert bad_priority.status_code == 400
    assert bad_priority.json()['field'] == 'priority'

    blank = client.post('/api/features', json={'description': '   '})
    assert blank.status_code == 400
    assert blank.json()['message'] == 'description is required'


def test_unknown_feature_and_task_are_404():
    client, _ = build_client()
    assert client.get('/api/features/nope').status_code == 404
    assert client.get('/api/features/nope/transitions').status_code == 404
    assert client.get('/api/tasks/999').status_code == 404
    missing = client.post('/api/features/nope/priority', json={'priority': 'low'})
    assert missing.status_code == 404
    assert missing.json()['code'] == 'not_found'


def test_priority_and_transitions():
    client, _ = build_client()
    feature = client.post('/api/features', json={'description': 'Add login'}).json()

    updated = client.post(f'/api/features/{feature["id"]}/priority', json={'priority': 'critical'})
    assert updated.json()['priority'] == 'critical'

    transitions = client.get(f'/api/features/{feature["id"]}/transitions').json()
    assert [(t['from_state'], t['to_state'], t['actor']) for t in transitions] == [(None, 'pending', 'user')]


def test_completion_requires_running_task():
    client, service = build_client()
    feature = client.post('/api/features', json={'description': 'Add login'}).json()
    task_id = service.get_feature(feature['id']).tasks[0].id

    pending = client.post(f'/api/tasks/{task_id}/completion', json={'output': {'filesCreated': []}})
    assert pending.status_code == 400
    assert pending.json()['code'] == 'task_not_in_progress'

    service.store.update_task(task_id, status=TaskStatus.IN_PROGRESS)
    with service.completion_bus.register(task_id) as ticket:
        ok = client.post(
            f'/api/tasks/{task_id}/completion',
            json={'status': 'complete', 'output': {'filesCreated': ['a.py']}},
        )
        assert ok.status_code == 200
        assert ok.json()['delivered'] is True
        assert ticket.wait(timeout=0).output == {'filesCreated': ['a.py']}

    missing_output = client.post(f'/api/tasks/{task_id}/completion', json={'status': 'complete'})
    assert missing_output.status_code == 400
    assert missing_output.json()['field'] == 'output'


def test_progress_report():
    client, service = build_client()
    feature = client.post('/api/features', json={'description': 'Add login'}).json()
    task_id = service.get_feature(feature['id']).tasks[0].id
    service.store.update_task(task_id, status=TaskStatus.IN_PROGRESS)

    ok = client.post(f'/api/tasks/{task_id}/progress', json={'progress': 'halfway', 'percent_complete': 50})
    assert ok.status_code == 200
    assert ok.json()['id'] == task_id

    bad = client.post(f'/api/tasks/{task_id}/progress', json={'progress': 'x', 'percent_complete': 150})
    assert bad.status_code == 400
    assert bad.json()['field'] == 'percent_complete'


def test_development_lifecycle_runs_pipeline():
    client, _ = build_client()
    feature = client.post('/api/features', json={'description': 'Add login'}).json()

    status = client.get('/api/development/status').json()
    assert status['development_mode'] is False
    assert status['pending_tasks'] == 1

    started = client.post('/api/development/start').json()
    assert started['development_mode'] is True

    tasks = client.get(f'/api/features/{feature["id"]}').json()['tasks']
    assert tasks[0]['status'] == 'complete'
    assert tasks[0]['attempts'] == 1
    assert tasks[1]['role'] == 'developer'

    assert client.post('/api/orchestrator/pause').json()['paused'] is True
    assert client.post('/api/orchestrator/resume').json()['paused'] is False
    assert client.post('/api/development/stop').json()['development_mode'] is False

    metrics = client.get('/api/metrics').json()
    assert metrics['tasks']['complete'] == 1
    progress = client.get('/api/progress').json()
    assert progress['completed'] == 1
    audit = client.get('/api/audit', params={'limit': 3}).json()
    assert [a['action'] for a in audit] == ['development-stopped', 'orchestrator-resumed', 'orchestrator-paused']


def test_lifespan_starts_and_stops_scheduler():
    _, service = build_client()
    app = create_app(service=service, manage_scheduler=True)
    with TestClient(app) as client:
        assert client.get('/api/development/status').json()['running'] is True
    assert service.scheduler.is_running is False
