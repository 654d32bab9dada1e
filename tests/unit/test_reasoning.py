from __future__ import annotations

from datetime import datetime, timezone

import pytest

from devpipe.adapters.base import FAILURE_CONFIGURATION, FAILURE_TIMEOUT, ExecutionResult
from devpipe.deadlock import ACTION_PRIORITIZE, ACTION_UNBLOCK, ACTION_WAIT, DEADLOCK_CIRCULAR, DEADLOCK_RESOURCE, Deadlock, WorkItem
from devpipe.domain.models import Role, Task, TaskStatus
from devpipe.reasoning import ModelReasoner, RuleBasedReasoner, build_reasoner


def _task(task_id: int, role: Role = Role.DEVELOPER) -> Task:
    return Task(
        id=task_id,
        feature_id='feat-1',
        role=role,
        description=f'task {task_id}',
        status=TaskStatus.PENDING,
        attempts=0,
        created_at=datetime.now(timezone.utc),
    )


class FakeStrategy:
    def __init__(self, *results: ExecutionResult):
        self.results = list(results)
        self.prompts: list[str] = []

    def execute(self, role, task, context, *, timeout_seconds=None, prompt=None):
        self.prompts.append(prompt)
        return self.results.pop(0)


def _answer(data) -> ExecutionResult:
    return ExecutionResult(success=True, output=data, attempts=1)


def test_rules_retry_everything_but_configuration():
    rules = RuleBasedReasoner()
    assert rules.analyze_failure(_task(1), 'boom', failure_kind=FAILURE_TIMEOUT).retry is True
    assert rules.analyze_failure(_task(1), 'missing', failure_kind=FAILURE_CONFIGURATION).retry is False


def test_rules_pick_first_candidates():
    rules = RuleBasedReasoner()
    tasks = [_task(1), _task(2)]
    assert rules.select_next_task(tasks).id == 1
    assert rules.select_next_task([]) is None
    assert rules.determine_next_role(tasks[0], {}, [Role.REVIEWER, Role.DEVELOPER]) == Role.REVIEWER
    assert rules.determine_next_role(tasks[0], {}, []) is None


def test_rules_resolve_deadlocks_by_type():
    items = (WorkItem(id=7, title='x'), WorkItem(id=3, title='y'))
    rules = RuleBasedReasoner()
    circular = rules.resolve_deadlock(Deadlock(type=DEADLOCK_CIRCULAR, items=items, description=''))
    assert circular.action == ACTION_UNBLOCK
    assert circular.target_id == 3
    assert rules.resolve_deadlock(Deadlock(type=DEADLOCK_RESOURCE, items=items, description='')).action == ACTION_WAIT


def test_model_failure_analysis_uses_answer():
    strategy = FakeStrategy(_answer({'retry': True, 'modifiedPrompt': 'Try smaller', 'additionalContext': ' '}))
    analysis = ModelReasoner(strategy=strategy).analyze_failure(_task(4), 'tests failed', failure_kind='execution')
    assert analysis.retry is True
    assert analysis.modified_prompt == 'Try smaller'
    assert analysis.additional_context is None
    assert 'tests failed' in strategy.prompts[0]


def test_model_failure_analysis_falls_back_on_bad_answer():
    strategy = FakeStrategy(ExecutionResult(success=False, error='down'))
    analysis = ModelReasoner(strategy=strategy).analyze_failure(_task(4), 'x', failure_kind='execution')
    assert analysis.retry is True

    strategy = FakeStrategy(_answer({'retry': 'maybe'}))
    assert ModelReasoner(strategy=strategy).analyze_failure(_task(4), 'x').retry is True


def test_model_skips_call_for_configuration_failures():
    strategy = FakeStrategy()
    analysis = ModelReasoner(strategy=strategy).analyze_failure(_task(4), 'x', failure_kind=FAILURE_CONFIGURATION)
    assert analysis.retry is False
    assert strategy.prompts == []


def test_model_select_next_task_by_id_with_fallback():
    tasks = [_task(1), _task(2)]
    assert ModelReasoner(strategy=FakeStrategy(_answer({'taskId': 2}))).select_next_task(tasks).id == 2
    assert ModelReasoner(strategy=FakeStrategy(_answer({'taskId': 42}))).select_next_task(tasks).id == 1
    single = FakeStrategy()
    assert ModelReasoner(strategy=single).select_next_task(tasks[:1]).id == 1
    assert single.prompts == []


def test_model_next_role_must_be_an_option():
    options = [Role.REVIEWER, Role.DEVELOPER]
    task = _task(1)
    picked = ModelReasoner(strategy=FakeStrategy(_answer({'role': 'Developer'}))).determine_next_role(task, {}, options)
    assert picked == Role.DEVELOPER
    bogus = ModelReasoner(strategy=FakeStrategy(_answer({'role': 'architect'}))).determine_next_role(task, {}, options)
    assert bogus == Role.REVIEWER


def test_model_deadlock_resolution_validates_action():
    deadlock = Deadlock(type=DEADLOCK_CIRCULAR, items=(WorkItem(id=1, title='a'),), description='cycle')
    good = ModelReasoner(strategy=FakeStrategy(_answer({'action': 'prioritize', 'targetTaskId': 1})))
    resolution = good.resolve_deadlock(deadlock)
    assert resolution.action == ACTION_PRIORITIZE
    assert resolution.target_id == 1

    odd = ModelReasoner(strategy=FakeStrategy(_answer({'action': 'delete'})))
    assert odd.resolve_deadlock(deadlock).action == ACTION_WAIT

    down = ModelReasoner(strategy=FakeStrategy(ExecutionResult(success=False, error='down')))
    assert down.resolve_deadlock(deadlock).reason == 'Unable to determine resolution strategy'


def test_build_reasoner():
    assert isinstance(build_reasoner('rules'), RuleBasedReasoner)
    assert isinstance(build_reasoner('model', strategy=FakeStrategy()), ModelReasoner)
    with pytest.raises(ValueError):
        build_reasoner('model')
