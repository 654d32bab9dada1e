from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Protocol

from devpipe.domain.models import Role, Task

FAILURE_CONFIGURATION = 'configuration'
FAILURE_EXECUTION = 'execution'
FAILURE_TIMEOUT = 'timeout'
FAILURE_OUTPUT = 'output_contract'
FAILURE_NO_COMPLETION = 'no_completion'


@dataclass(frozen=True)
class ContextEntry:
    kind: str
    content: Any
    author: str | None = None

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, indent=2, ensure_ascii=False, default=str)

    def render(self) -> str:
        return f'[{self.kind}]\n{self.text()}'

    def summary(self, limit: int = 200) -> str:
        body = ' '.join(self.text().split())
        if len(body) > limit:
            body = body[:limit] + '...'
        return f'{self.kind}: {body}'


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    output: Any = None
    error: str | None = None
    duration_seconds: float = 0.0
    attempts: int = 0
    failure_kind: str | None = None
    raw_output: str | None = None


class ExecutionStrategy(Protocol):
    def execute(
        self,
        role: Role,
        task: Task,
        context: list[ContextEntry],
        *,
        timeout_seconds: float | None = None,
        prompt: str | None = None,
    ) -> ExecutionResult:
        ...


DRY_RUN_OUTPUTS: dict[Role, dict[str, Any]] = {
    Role.ARCHITECT: {
        'discoveries': [
            {'type': 'pattern', 'title': 'Dry run', 'description': 'simulated discovery', 'impact': 'low'},
        ],
        'decisions': [
            {'title': 'Dry run', 'context': 'simulated', 'decision': 'keep the current layout', 'consequences': 'none'},
        ],
        'userStories': [],
        'design': {'overview': 'simulated design'},
    },
    Role.DEVELOPER: {
        'filesCreated': [],
        'filesModified': [],
        'testsAdded': [],
        'implementation': {'summary': 'simulated implementation'},
    },
    Role.REVIEWER: {
        'approved': True,
        'issues': [],
        'suggestions': [],
        'summary': 'simulated review',
    },
}


def dry_run_result(role: Role | str) -> ExecutionResult:
    output = json.loads(json.dumps(DRY_RUN_OUTPUTS[Role(role)]))
    return ExecutionResult(success=True, output=output, duration_seconds=0.0, attempts=1)


def failed_after(attempts: int, last_error: str | None) -> str:
    return f'Failed after {attempts} attempts: {last_error or "unknown error"}'
