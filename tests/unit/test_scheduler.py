from __future__ import annotations

import logging
from threading import Barrier, Event

import pytest

from devpipe.adapters.base import FAILURE_CONFIGURATION, ExecutionResult
from devpipe.adapters.headless import HeadlessStrategy
from devpipe.domain.models import Actor, ContextType, FeatureStatus, Role, TaskStatus
from devpipe.domain.pipeline import review_loop_pipeline
from devpipe.reasoning import FailureAnalysis, RuleBasedReasoner
from devpipe.repository import InMemoryPipelineStore
from devpipe.scheduler import SELF_HEALING_DESCRIPTION, Scheduler, SchedulerConfig

ARCHITECT_OUTPUT = {
    'discoveries': [{'type': 'pattern', 'title': 'Sessions', 'description': 'app uses server sessions'}],
    'decisions': [{'title': 'Use sessions', 'context': 'simple', 'alternatives': {'jwt': 'stateless'}}],
    'userStories': [
        {'title': 'Login form', 'description': 'As a user I can log in', 'acceptanceCriteria': ['shows errors']},
    ],
}
DEVELOPER_OUTPUT = {'filesCreated': ['login.py'], 'filesModified': [], 'testsAdded': ['test_login.py']}
REVIEWER_OUTPUT = {'approved': True, 'issues': []}


class FakeStrategy:
    """Returns scripted results in order; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[dict] = []

    def execute(self, role, task, context, *, timeout_seconds=None, prompt=None):
        self.calls.append(
            {'task_id': task.id, 'description': task.description, 'context': context, 'timeout_seconds': timeout_seconds}
        )
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, ExecutionResult):
            return item
        return ExecutionResult(success=True, output=item, attempts=1)


class BlockingStrategy:
    def __init__(self, output):
        self.output = output
        self.release = Event()
        self.entered = Event()
        self.started: list[int] = []

    def execute(self, role, task, context, *, timeout_seconds=None, prompt=None):
        self.started.append(task.id)
        self.entered.set()
        self.release.wait(5)
        return ExecutionResult(success=True, output=self.output, attempts=1)


def _strategies(**overrides):
    strategies = {
        Role.ARCHITECT: FakeStrategy(ARCHITECT_OUTPUT),
        Role.DEVELOPER: FakeStrategy(DEVELOPER_OUTPUT),
        Role.REVIEWER: FakeStrategy(REVIEWER_OUTPUT),
    }
    for name, strategy in overrides.items():
        strategies[Role(name)] = strategy
    return strategies


def _inline(fn, name):
    fn()


def _scheduler(store, *, strategies=None, threaded=False, **kwargs):
    config = kwargs.pop('config', None) or SchedulerConfig()
    scheduler = Scheduler(
        store=store,
        strategies=strategies or _strategies(),
        config=config,
        launcher=None if threaded else _inline,
        **kwargs,
    )
    events: list[dict] = []
    scheduler.subscribe(events.append)
    return scheduler, events


def _feature(store, description='Add login'):
    feature = store.create_feature(description=description)
    task = store.create_task(feature_id=feature.id, role=Role.ARCHITECT, description=f'Design architecture for: {description}')
    return feature, task


def _types(events):
    return [e['type'] for e in events]


def test_requires_a_strategy_per_role():
    with pytest.raises(ValueError, match='reviewer'):
        Scheduler(store=InMemoryPipelineStore(), strategies={Role.ARCHITECT: FakeStrategy({}), Role.DEVELOPER: FakeStrategy({})})


def test_forward_pipeline_runs_to_completion():
    store = InMemoryPipelineStore()
    strategies = _strategies()
    scheduler, events = _scheduler(store, strategies=strategies)
    feature, architect = _feature(store)

    assert scheduler.process_next_tasks() == 1
    tasks = store.list_tasks(feature_id=feature.id)
    assert [t.role for t in tasks] == [Role.ARCHITECT, Role.DEVELOPER]
    developer = tasks[1]
    assert developer.description == 'Implement user story: Login form'
    assert [s.title for s in store.list_user_stories_for_task(developer.id)] == ['Login form']
    assert store.get_feature(feature.id).status == FeatureStatus.IN_PROGRESS

    assert scheduler.process_next_tasks() == 1
    assert scheduler.process_next_tasks() == 1

    tasks = store.list_tasks(feature_id=feature.id)
    assert [t.role for t in tasks] == [Role.ARCHITECT, Role.DEVELOPER, Role.REVIEWER]
    assert all(t.status == TaskStatus.COMPLETE for t in tasks)
    assert all(t.attempts == 1 for t in tasks)
    assert store.get_feature(feature.id).status == FeatureStatus.COMPLETE
    assert _types(events).count('feature_completed') == 1
    assert 'architect_output_processed' in _types(events)
    assert scheduler.process_next_tasks() == 0
    assert all(call['timeout_seconds'] is None for s in strategies.values() for call in s.calls)


def test_architect_artifacts_are_persisted_and_shared():
    store = InMemoryPipelineStore()
    strategies = _strategies()
    scheduler, _ = _scheduler(store, strategies=strategies)
    feature, _ = _feature(store)

    scheduler.process_next_tasks()
    scheduler.process_next_tasks()
    scheduler.process_next_tasks()

    discovery = store.list_discoveries(feature.id)[0]
    assert discovery.description == 'Sessions: app uses server sessions'
    assert discovery.impact == 'medium'
    decision = store.list_decisions(feature.id)[0]
    assert decision.decision == 'Use sessions'
    assert decision.rationale == 'simple'
    assert decision.alternatives == ['jwt: stateless']
    assert decision.consequences is None

    developer_context = strategies[Role.DEVELOPER].calls[0]['context']
    assert [e.kind for e in developer_context] == [
        'feature',
        'architecture',
        'technical_discoveries',
        'architecture_decisions',
        'user_stories',
    ]
    assert developer_context[1].content == ARCHITECT_OUTPUT
    reviewer_context = strategies[Role.REVIEWER].calls[0]['context']
    assert [e.kind for e in reviewer_context] == [
        'feature',
        'architecture',
        'implementation',
        'technical_discoveries',
        'architecture_decisions',
    ]
    assert [c.author for c in store.list_contexts(feature.id)] == ['architect', 'developer', 'reviewer']


def test_architect_without_stories_creates_one_developer_task():
    store = InMemoryPipelineStore()
    scheduler, _ = _scheduler(store, strategies=_strategies(architect=FakeStrategy({'design': {'overview': 'x'}})))
    feature, _ = _feature(store, 'Add search')

    scheduler.process_next_tasks()

    developers = store.list_tasks(feature_id=feature.id, role=Role.DEVELOPER)
    assert [t.description for t in developers] == ['Implement solution for: Add search']


def test_developer_cap_limits_concurrent_dispatch():
    store = InMemoryPipelineStore()
    blocking = BlockingStrategy(DEVELOPER_OUTPUT)
    config = SchedulerConfig(max_concurrent_tasks=5)
    scheduler, _ = _scheduler(store, strategies=_strategies(developer=blocking), threaded=True, config=config)
    feature = store.create_feature(description='Parallel work')
    first = store.create_task(feature_id=feature.id, role=Role.DEVELOPER, description='one')
    second = store.create_task(feature_id=feature.id, role=Role.DEVELOPER, description='two')

    try:
        assert scheduler.process_next_tasks() == 1
        assert blocking.entered.wait(2)
        running = scheduler.running_tasks()
        assert [(r.task_id, r.role) for r in running] == [(first.id, Role.DEVELOPER)]
        assert scheduler.process_next_tasks() == 0
        assert store.get_task(second.id).status == TaskStatus.PENDING
        assert scheduler.get_metrics()['orchestrator']['running_by_role']['developer'] == 1
    finally:
        blocking.release.set()
        assert scheduler.wait_for_idle(5)

    assert store.get_task(first.id).status == TaskStatus.COMPLETE
    assert blocking.started == [first.id]


def test_global_cap_bounds_all_roles():
    store = InMemoryPipelineStore()
    blocking = BlockingStrategy(ARCHITECT_OUTPUT)
    config = SchedulerConfig(max_concurrent_tasks=2)
    scheduler, _ = _scheduler(store, strategies=_strategies(architect=blocking), threaded=True, config=config)
    for name in ('a', 'b', 'c'):
        _feature(store, name)

    try:
        assert scheduler.process_next_tasks() == 2
        assert len(scheduler.running_tasks()) == 2
    finally:
        blocking.release.set()
        assert scheduler.wait_for_idle(5)


class RendezvousStrategy:
    """Holds every caller until ``parties`` of them have arrived, then lets them finish together."""

    def __init__(self, output, parties):
        self.output = output
        self.barrier = Barrier(parties, timeout=5)

    def execute(self, role, task, context, *, timeout_seconds=None, prompt=None):
        self.barrier.wait()
        return ExecutionResult(success=True, output=self.output, attempts=1)


def test_parallel_developers_still_reach_review():
    store = InMemoryPipelineStore()
    two_stories = dict(
        ARCHITECT_OUTPUT,
        userStories=[
            {'title': 'Login form', 'description': 'As a user I can log in'},
            {'title': 'Logout link', 'description': 'As a user I can log out'},
        ],
    )
    config = SchedulerConfig(max_concurrent_tasks=3, max_concurrent_by_role={Role.ARCHITECT: 1, Role.DEVELOPER: 2, Role.REVIEWER: 1})
    strategies = _strategies(architect=FakeStrategy(two_stories), developer=RendezvousStrategy(DEVELOPER_OUTPUT, 2))
    scheduler, events = _scheduler(store, strategies=strategies, threaded=True, config=config)
    feature, _ = _feature(store)

    assert scheduler.process_next_tasks() == 1
    assert scheduler.wait_for_idle(5)
    assert scheduler.process_next_tasks() == 2
    assert scheduler.wait_for_idle(5)

    roles = [t.role for t in store.list_tasks(feature_id=feature.id)]
    assert roles == [Role.ARCHITECT, Role.DEVELOPER, Role.DEVELOPER, Role.REVIEWER]
    assert store.get_feature(feature.id).status == FeatureStatus.IN_PROGRESS

    assert scheduler.process_next_tasks() == 1
    assert scheduler.wait_for_idle(5)

    tasks = store.list_tasks(feature_id=feature.id)
    assert [t.role for t in tasks].count(Role.REVIEWER) == 1
    assert all(t.status == TaskStatus.COMPLETE for t in tasks)
    assert store.get_feature(feature.id).status == FeatureStatus.COMPLETE
    assert _types(events).count('feature_completed') == 1


def test_feature_without_review_is_not_complete():
    store = InMemoryPipelineStore()
    scheduler, _ = _scheduler(store)
    feature, architect = _feature(store)
    store.update_feature(feature.id, status=FeatureStatus.IN_PROGRESS)
    store.update_task(architect.id, status=TaskStatus.COMPLETE, output={'design': {}})
    first = store.create_task(feature_id=feature.id, role=Role.DEVELOPER, description='one')
    store.update_task(first.id, status=TaskStatus.COMPLETE, output=DEVELOPER_OUTPUT)
    second = store.create_task(feature_id=feature.id, role=Role.DEVELOPER, description='two')

    assert scheduler.process_next_tasks() == 1

    assert store.get_task(second.id).status == TaskStatus.COMPLETE
    reviewers = store.list_tasks(feature_id=feature.id, role=Role.REVIEWER)
    assert [t.status for t in reviewers] == [TaskStatus.PENDING]
    assert store.get_feature(feature.id).status == FeatureStatus.IN_PROGRESS


def test_short_task_timeout_is_flagged_against_strategy_budget(caplog):
    slow = HeadlessStrategy(max_retries=3, retry_delay_seconds=1.0, timeout_seconds=1800)
    with caplog.at_level(logging.WARNING, logger='devpipe.scheduler'):
        _scheduler(InMemoryPipelineStore(), strategies=_strategies(architect=slow))
    flagged = [r.getMessage() for r in caplog.records if 'task_timeout_below_strategy_budget' in r.getMessage()]
    assert flagged == ['task_timeout_below_strategy_budget role=architect budget_seconds=5403 task_timeout_seconds=3600']

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger='devpipe.scheduler'):
        _scheduler(InMemoryPipelineStore(), strategies=_strategies(architect=HeadlessStrategy()))
    assert not [r for r in caplog.records if 'task_timeout_below_strategy_budget' in r.getMessage()]


def test_stuck_task_is_swept_and_retried():
    store = InMemoryPipelineStore()
    blocking = BlockingStrategy(DEVELOPER_OUTPUT)
    now = [100.0]
    config = SchedulerConfig(task_timeout_seconds=10)
    scheduler, events = _scheduler(
        store,
        strategies=_strategies(developer=blocking),
        threaded=True,
        config=config,
        clock=lambda: now[0],
    )
    feature = store.create_feature(description='Slow work')
    task = store.create_task(feature_id=feature.id, role=Role.DEVELOPER, description='slow')

    try:
        scheduler.process_next_tasks()
        assert blocking.entered.wait(2)
        now[0] = 111.0
        scheduler.process_next_tasks()

        types = _types(events)
        assert 'task_timeout' in types
        assert 'task_retry_scheduled' in types
        failed = next(e for e in events if e['type'] == 'task_failed')
        assert failed['error'] == 'Task timed out after 11s'
        current = store.get_task(task.id)
        assert current.status == TaskStatus.IN_PROGRESS
        assert current.attempts == 2
    finally:
        blocking.release.set()
        assert scheduler.wait_for_idle(5)

    assert store.get_task(task.id).status == TaskStatus.COMPLETE


def test_attempts_bound_fails_task_without_running():
    store = InMemoryPipelineStore()
    strategies = _strategies()
    scheduler, events = _scheduler(store, strategies=strategies)
    feature, task = _feature(store)
    for _ in range(3):
        store.increment_attempts(task.id)

    assert scheduler.process_next_tasks() == 0

    assert strategies[Role.ARCHITECT].calls == []
    current = store.get_task(task.id)
    assert current.status == TaskStatus.FAILED
    assert current.error == 'Max attempts (3) exceeded'
    assert store.get_feature(feature.id).status == FeatureStatus.FAILED
    assert 'feature_failed' in _types(events)

    healing = [f for f in store.list_features() if f.is_system]
    assert len(healing) == 1
    assert healing[0].description == SELF_HEALING_DESCRIPTION
    assert healing[0].metadata['kind'] == 'self-healing'
    healing_tasks = store.list_tasks(feature_id=healing[0].id)
    assert len(healing_tasks) == 1
    assert healing_tasks[0].role == Role.ARCHITECT
    assert healing_tasks[0].description.startswith(f'[task-failure] Unblock feature {feature.id}')


class AdvisingReasoner(RuleBasedReasoner):
    def analyze_failure(self, task, error, *, failure_kind=None):
        return FailureAnalysis(
            retry=True,
            modified_prompt='Design a smaller login flow',
            additional_context='Reuse the existing session module',
            reason='scope too large',
        )


def test_self_healing_retry_rewrites_task_and_adds_context():
    store = InMemoryPipelineStore()
    architect = FakeStrategy(
        ExecutionResult(success=False, error='Model exited with code 1: oops', failure_kind='execution'),
        ARCHITECT_OUTPUT,
    )
    scheduler, events = _scheduler(store, strategies=_strategies(architect=architect), reasoner=AdvisingReasoner())
    feature, task = _feature(store)

    scheduler.process_next_tasks()
    retried = store.get_task(task.id)
    assert retried.status == TaskStatus.PENDING
    assert retried.attempts == 1
    assert retried.description == 'Design a smaller login flow'
    hint = store.list_contexts(feature.id)[0]
    assert hint.type == ContextType.IMPLEMENTATION
    assert hint.author == 'self-healing'
    assert hint.content == 'Reuse the existing session module'

    scheduler.process_next_tasks()
    done = store.get_task(task.id)
    assert done.status == TaskStatus.COMPLETE
    assert done.attempts == 2
    assert architect.calls[1]['description'] == 'Design a smaller login flow'

    transitions = store.list_transitions('task', task.id)
    assert [(t.from_state, t.to_state) for t in transitions] == [
        ('pending', 'in_progress'),
        ('in_progress', 'failed'),
        ('failed', 'pending'),
        ('pending', 'in_progress'),
        ('in_progress', 'complete'),
    ]
    assert transitions[2].actor == Actor.AI
    assert 'self-healing-retry' in [a.action for a in store.list_audit()]
    assert 'task_retry_scheduled' in _types(events)


def test_configuration_failure_is_not_retried():
    store = InMemoryPipelineStore()
    failing = FakeStrategy(
        ExecutionResult(success=False, error='Model executable not found at: claude', failure_kind=FAILURE_CONFIGURATION)
    )
    scheduler, _ = _scheduler(store, strategies=_strategies(architect=failing))
    feature, task = _feature(store)

    scheduler.process_next_tasks()

    assert store.get_task(task.id).status == TaskStatus.FAILED
    assert store.get_feature(feature.id).status == FeatureStatus.FAILED
    actions = [a.action for a in store.list_audit()]
    assert 'self-healing-declined' in actions
    assert 'self-healing-task-created' in actions


class ExplodingReasoner(RuleBasedReasoner):
    def analyze_failure(self, task, error, *, failure_kind=None):
        raise RuntimeError('analysis unavailable')


def test_failure_analysis_error_blocks_feature():
    store = InMemoryPipelineStore()
    failing = FakeStrategy(ExecutionResult(success=False, error='boom'))
    scheduler, events = _scheduler(store, strategies=_strategies(architect=failing), reasoner=ExplodingReasoner())
    feature, _ = _feature(store)

    scheduler.process_next_tasks()

    assert store.get_feature(feature.id).status == FeatureStatus.FAILED
    assert 'self_healing_failed' in _types(events)
    assert 'self-healing-failed' in [a.action for a in store.list_audit()]


def test_self_healing_disabled_fails_feature_immediately():
    store = InMemoryPipelineStore()
    failing = FakeStrategy(ExecutionResult(success=False, error='boom'))
    config = SchedulerConfig(self_healing_enabled=False)
    scheduler, _ = _scheduler(store, strategies=_strategies(architect=failing), reasoner=ExplodingReasoner(), config=config)
    feature, task = _feature(store)

    scheduler.process_next_tasks()

    assert store.get_task(task.id).attempts == 1
    assert store.get_feature(feature.id).status == FeatureStatus.FAILED
    assert any(f.is_system for f in store.list_features())


def test_strategy_exception_becomes_execution_error():
    store = InMemoryPipelineStore()
    scheduler, events = _scheduler(store, strategies=_strategies(architect=FakeStrategy(RuntimeError('boom'))))
    _, task = _feature(store)

    scheduler.process_next_tasks()

    failed = next(e for e in events if e['type'] == 'task_failed')
    assert failed['error'] == 'Execution error: boom'
    assert store.get_task(task.id).status == TaskStatus.PENDING


def test_failed_self_healing_task_does_not_cascade():
    store = InMemoryPipelineStore()
    failing = FakeStrategy(ExecutionResult(success=False, error='boom'))
    scheduler, _ = _scheduler(store, strategies=_strategies(architect=failing))
    healing_task = scheduler.create_self_healing_task('manual', 'Investigate flaky runner')

    scheduler.process_next_tasks()

    assert store.get_task(healing_task.id).status == TaskStatus.FAILED
    assert len(store.list_features()) == 1
    assert len(store.list_tasks()) == 1


def test_self_healing_feature_is_reused():
    store = InMemoryPipelineStore()
    scheduler, _ = _scheduler(store)
    first = scheduler.create_self_healing_task('a', 'one')
    second = scheduler.create_self_healing_task('b', 'two')
    assert first.feature_id == second.feature_id
    assert second.description == '[b] two'

    fresh, _ = _scheduler(store)
    third = fresh.create_self_healing_task('c', 'three')
    assert third.feature_id == first.feature_id


def test_review_loop_returns_rejected_work_to_developer():
    store = InMemoryPipelineStore()
    reviewer = FakeStrategy({'approved': False, 'issues': ['missing tests']}, REVIEWER_OUTPUT)
    scheduler, events = _scheduler(
        store,
        strategies=_strategies(architect=FakeStrategy({'design': {}}), reviewer=reviewer),
        pipeline=review_loop_pipeline(),
    )
    feature, _ = _feature(store)

    for _ in range(5):
        scheduler.process_next_tasks()

    tasks = store.list_tasks(feature_id=feature.id)
    assert [t.role for t in tasks] == [
        Role.ARCHITECT,
        Role.DEVELOPER,
        Role.REVIEWER,
        Role.DEVELOPER,
        Role.REVIEWER,
    ]
    assert tasks[3].description == 'Address review feedback for feature: Add login'
    assert store.get_feature(feature.id).status == FeatureStatus.COMPLETE
    assert _types(events).count('feature_completed') == 1


def test_deadlocked_cycle_is_detected_once_and_broken():
    store = InMemoryPipelineStore()
    config = SchedulerConfig(deadlock_detection=True, max_concurrent_tasks=5)
    scheduler, events = _scheduler(store, config=config)
    feature = store.create_feature(description='Tangled reviews')
    one = store.create_task(feature_id=feature.id, role=Role.REVIEWER, description='review a, depends on #2')
    two = store.create_task(feature_id=feature.id, role=Role.REVIEWER, description='review b, depends on #3')
    three = store.create_task(feature_id=feature.id, role=Role.REVIEWER, description='review c, depends on #1')
    assert (one.id, two.id, three.id) == (1, 2, 3)

    scheduler.process_next_tasks()

    detected = [e['deadlock_type'] for e in events if e['type'] == 'deadlock_detected']
    assert detected.count('circular') == 1
    assert detected.count('dependency') == 3
    circular = next(e for e in events if e['type'] == 'deadlock_resolved' and e['deadlock_type'] == 'circular')
    assert circular['action'] == 'unblock'
    assert circular['target'] == 1
    assert circular['resolved'] is True
    assert store.get_task(1).status == TaskStatus.COMPLETE
    assert store.get_task(2).status == TaskStatus.PENDING
    assert store.get_task(3).status == TaskStatus.COMPLETE

    scheduler.process_next_tasks()

    assert _types(events).count('deadlock_detected') == 4
    assert store.get_task(2).status == TaskStatus.COMPLETE
    # Reviews alone never finish a feature; the architect and developer stages are missing.
    assert store.get_feature(feature.id).status == FeatureStatus.IN_PROGRESS
    assert scheduler.get_metrics()['deadlocks'] == {'detected': 4, 'resolved': 1}
    assert scheduler._seen_deadlocks == set()


def test_tick_respects_development_mode_and_pause():
    store = InMemoryPipelineStore()
    scheduler, events = _scheduler(store)
    _, task = _feature(store)

    assert scheduler.tick() == 0
    scheduler.pause()
    scheduler.start_development()
    assert store.get_task(task.id).status == TaskStatus.PENDING

    scheduler.resume()
    assert scheduler.tick() == 1
    assert store.get_task(task.id).status == TaskStatus.COMPLETE

    scheduler.stop_development()
    assert scheduler.development_mode is False
    types = _types(events)
    assert types[:3] == ['orchestrator_paused', 'development_started', 'orchestrator_resumed']


def test_start_recovers_orphaned_tasks_and_stop_audits():
    store = InMemoryPipelineStore()
    scheduler, events = _scheduler(store)
    _, task = _feature(store)
    store.update_task(task.id, status=TaskStatus.IN_PROGRESS)

    scheduler.start()
    try:
        assert scheduler.is_running is True
        assert store.get_task(task.id).status == TaskStatus.PENDING
        reasons = [t.reason for t in store.list_transitions('task', task.id)]
        assert reasons == ['recovered after restart']
    finally:
        scheduler.stop()

    assert scheduler.is_running is False
    actions = [a.action for a in store.list_audit()]
    assert actions[:2] == ['orchestrator-stopped', 'orchestrator-started']
    assert _types(events) == ['task_recovered', 'orchestrator_started', 'orchestrator_stopped']


def test_listener_errors_do_not_break_emit():
    store = InMemoryPipelineStore()
    scheduler, events = _scheduler(store)

    def broken(event):
        raise RuntimeError('listener down')

    unsubscribe = scheduler.subscribe(broken)
    event = scheduler.emit('warning', message='hello')
    assert event == {'type': 'warning', 'message': 'hello'}
    assert events[-1] == event
    unsubscribe()


def test_metrics_and_progress_after_completion():
    store = InMemoryPipelineStore()
    scheduler, _ = _scheduler(store)
    _feature(store)
    for _ in range(3):
        scheduler.process_next_tasks()

    metrics = scheduler.get_metrics()
    assert metrics['features']['complete'] == 1
    assert metrics['tasks']['complete'] == 3
    assert metrics['orchestrator']['running'] is False
    assert metrics['orchestrator']['max_concurrent'] == 2

    progress = scheduler.get_progress()
    assert progress['active_tasks'] == []
    assert progress['completed'] == 3
    assert progress['pending'] == 0
    assert progress['average_completion_seconds'] is not None
