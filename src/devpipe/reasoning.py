from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Protocol

from devpipe.adapters.base import FAILURE_CONFIGURATION, ExecutionStrategy
from devpipe.deadlock import (
    ACTION_UNBLOCK,
    ACTION_WAIT,
    DEADLOCK_CIRCULAR,
    DEADLOCK_DEPENDENCY,
    RESOLUTION_ACTIONS,
    Deadlock,
    DeadlockResolution,
)
from devpipe.domain.models import Role, Task, TaskStatus

_log = logging.getLogger(__name__)

SELF_HEALING_FEATURE_ID = 'self-healing'


@dataclass(frozen=True)
class FailureAnalysis:
    retry: bool
    modified_prompt: str | None = None
    additional_context: str | None = None
    reason: str = ''


class ReasoningPort(Protocol):
    def analyze_failure(self, task: Task, error: str, *, failure_kind: str | None = None) -> FailureAnalysis:
        ...

    def select_next_task(self, candidates: list[Task]) -> Task | None:
        ...

    def determine_next_role(self, task: Task, output: Any, options: list[Role]) -> Role | None:
        ...

    def resolve_deadlock(self, deadlock: Deadlock) -> DeadlockResolution:
        ...


class RuleBasedReasoner:
    """Deterministic decisions; the default reasoner."""

    def analyze_failure(self, task: Task, error: str, *, failure_kind: str | None = None) -> FailureAnalysis:
        if failure_kind == FAILURE_CONFIGURATION:
            return FailureAnalysis(retry=False, reason='configuration errors are not retried')
        return FailureAnalysis(retry=True, reason=f'retrying after {failure_kind or "execution"} failure')

    def select_next_task(self, candidates: list[Task]) -> Task | None:
        return candidates[0] if candidates else None

    def determine_next_role(self, task: Task, output: Any, options: list[Role]) -> Role | None:
        return options[0] if options else None

    def resolve_deadlock(self, deadlock: Deadlock) -> DeadlockResolution:
        if not deadlock.items:
            return DeadlockResolution(action=ACTION_WAIT, reason='empty deadlock')
        if deadlock.type == DEADLOCK_CIRCULAR:
            target = min(item.id for item in deadlock.items)
            return DeadlockResolution(action=ACTION_UNBLOCK, target_id=target, reason='let the oldest item of the cycle proceed')
        if deadlock.type == DEADLOCK_DEPENDENCY:
            return DeadlockResolution(action=ACTION_WAIT, reason='blocked item clears when its upstream work completes')
        return DeadlockResolution(action=ACTION_WAIT, reason='resource conflicts clear when the holder finishes')


class ModelReasoner:
    """Asks the model for each decision and falls back to rules on any failure."""

    def __init__(
        self,
        *,
        strategy: ExecutionStrategy,
        fallback: ReasoningPort | None = None,
        timeout_seconds: float = 30.0,
    ):
        self.strategy = strategy
        self.fallback = fallback or RuleBasedReasoner()
        self.timeout_seconds = timeout_seconds

    def _ask(self, purpose: str, prompt: str) -> dict[str, Any] | None:
        probe = Task(
            id=0,
            feature_id=SELF_HEALING_FEATURE_ID,
            role=Role.ARCHITECT,
            description=purpose,
            status=TaskStatus.IN_PROGRESS,
            attempts=0,
            created_at=datetime.now(timezone.utc),
        )
        result = self.strategy.execute(
            Role.ARCHITECT,
            probe,
            [],
            timeout_seconds=self.timeout_seconds,
            prompt=prompt,
        )
        if not result.success or not isinstance(result.output, dict):
            _log.warning('reasoning_call_failed purpose=%s error=%s', purpose, result.error)
            return None
        return result.output

    def analyze_failure(self, task: Task, error: str, *, failure_kind: str | None = None) -> FailureAnalysis:
        if failure_kind == FAILURE_CONFIGURATION:
            return self.fallback.analyze_failure(task, error, failure_kind=failure_kind)
        prompt = (
            'A task in an automated development pipeline failed. Decide whether it should be retried.\n\n'
            f'Task #{task.id} (role: {Role(task.role).value}, attempts: {task.attempts})\n'
            f'Description:\n{task.description}\n\n'
            f'Error:\n{error}\n\n'
            'Return ONLY a JSON object:\n'
            '{"retry": true|false, "modifiedPrompt": "<optional replacement task description>", '
            '"additionalContext": "<optional context for the next attempt>", "reason": "<short explanation>"}'
        )
        data = self._ask('failure-analysis', prompt)
        if data is None or not isinstance(data.get('retry'), bool):
            return self.fallback.analyze_failure(task, error, failure_kind=failure_kind)
        return FailureAnalysis(
            retry=data['retry'],
            modified_prompt=_optional_text(data.get('modifiedPrompt')),
            additional_context=_optional_text(data.get('additionalContext')),
            reason=str(data.get('reason') or ''),
        )

    def select_next_task(self, candidates: list[Task]) -> Task | None:
        if len(candidates) < 2:
            return self.fallback.select_next_task(candidates)
        listing = json.dumps(
            [{'id': t.id, 'role': Role(t.role).value, 'description': t.description[:200]} for t in candidates],
            indent=2,
        )
        prompt = (
            'Choose which pending task should run next in an automated development pipeline.\n\n'
            f'Pending tasks:\n{listing}\n\n'
            'Return ONLY a JSON object: {"taskId": <id>, "reason": "<short explanation>"}'
        )
        data = self._ask('next-task-selection', prompt)
        chosen = data.get('taskId') if data else None
        for task in candidates:
            if task.id == chosen:
                return task
        return self.fallback.select_next_task(candidates)

    def determine_next_role(self, task: Task, output: Any, options: list[Role]) -> Role | None:
        if len(options) < 2:
            return self.fallback.determine_next_role(task, output, options)
        prompt = (
            'Decide the next pipeline role after a completed task.\n\n'
            f'Completed task #{task.id} (role: {Role(task.role).value})\n'
            f'Output:\n{json.dumps(output, indent=2, default=str)[:4000]}\n\n'
            f'Options: {", ".join(role.value for role in options)}\n'
            'Return ONLY a JSON object: {"role": "<one of the options>", "reason": "<short explanation>"}'
        )
        data = self._ask('next-role', prompt)
        picked = str((data or {}).get('role') or '').strip().lower()
        for role in options:
            if role.value == picked:
                return role
        return self.fallback.determine_next_role(task, output, options)

    def resolve_deadlock(self, deadlock: Deadlock) -> DeadlockResolution:
        listing = json.dumps(
            [{'id': item.id, 'title': item.title, 'state': item.state, 'priority': item.priority} for item in deadlock.items],
            indent=2,
        )
        prompt = (
            'You are resolving a deadlock in a development workflow.\n\n'
            f'Type: {deadlock.type}\nDescription: {deadlock.description}\nAffected items:\n{listing}\n\n'
            'Strategies: "prioritize" (run the target first), "unblock" (let the target proceed), '
            '"wait" (take no action).\n'
            'Return ONLY a JSON object: {"action": "<prioritize|unblock|wait>", "targetTaskId": <id>, '
            '"reason": "<short explanation>"}'
        )
        data = self._ask('deadlock-resolution', prompt)
        if data is None:
            return DeadlockResolution(action=ACTION_WAIT, reason='Unable to determine resolution strategy')
        action = str(data.get('action') or '').strip().lower()
        if action not in RESOLUTION_ACTIONS:
            return DeadlockResolution(action=ACTION_WAIT, reason=f'unsupported action: {action or "none"}')
        target = data.get('targetTaskId')
        return DeadlockResolution(
            action=action,
            target_id=int(target) if isinstance(target, (int, float)) and not isinstance(target, bool) else None,
            reason=str(data.get('reason') or ''),
        )


def _optional_text(value: Any) -> str | None:
    text = str(value or '').strip()
    return text or None


def build_reasoner(kind: str, *, strategy: ExecutionStrategy | None = None) -> ReasoningPort:
    key = str(kind or '').strip().lower()
    if key == 'model':
        if strategy is None:
            raise ValueError('model reasoner requires an execution strategy')
        return ModelReasoner(strategy=strategy)
    return RuleBasedReasoner()
