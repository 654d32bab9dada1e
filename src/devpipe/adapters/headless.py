from __future__ import annotations

import logging
import time

from devpipe.adapters.base import (
    FAILURE_CONFIGURATION,
    FAILURE_EXECUTION,
    FAILURE_OUTPUT,
    FAILURE_TIMEOUT,
    ContextEntry,
    ExecutionResult,
    dry_run_result,
    failed_after,
)
from devpipe.adapters.process import ExecutableNotFoundError, ProcessRunner, split_command
from devpipe.domain.models import Role, Task
from devpipe.role_prompts import build_prompt, parse_output, role_tools

_log = logging.getLogger(__name__)


def has_flag(argv: list[str], *names: str) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in names:
            return True
        if any(text.startswith(f'{name}=') for name in names if name.startswith('--')):
            return True
    return False


class HeadlessStrategy:
    """Single-shot model calls: one subprocess per attempt, JSON on stdout."""

    def __init__(
        self,
        *,
        command: str = 'claude',
        model: str | None = 'sonnet',
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        timeout_seconds: float = 300.0,
        runner: ProcessRunner | None = None,
        dry_run: bool = False,
        cwd: str | None = None,
    ):
        self.command = command
        self.model = model
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self.timeout_seconds = max(0.05, float(timeout_seconds))
        self.runner = runner or ProcessRunner()
        self.dry_run = bool(dry_run)
        self.cwd = cwd

    def build_argv(self, role: Role | str) -> list[str]:
        argv = split_command(self.command)
        if not has_flag(argv, '--print', '-p'):
            argv.append('--print')
        if self.model and not has_flag(argv, '--model'):
            argv.extend(['--model', self.model])
        if not has_flag(argv, '--allowedTools'):
            argv.extend(['--allowedTools', ','.join(role_tools(role))])
        return argv

    def backoff_seconds(self, attempt: int) -> float:
        return self.retry_delay_seconds * (2 ** max(0, int(attempt) - 1))

    @property
    def max_duration_seconds(self) -> float:
        """Longest a single ``execute`` call can take: every attempt timing out plus the backoff between them."""
        backoff = sum(self.backoff_seconds(attempt) for attempt in range(1, self.max_retries))
        return self.max_retries * self.timeout_seconds + backoff

    def execute(
        self,
        role: Role,
        task: Task,
        context: list[ContextEntry],
        *,
        timeout_seconds: float | None = None,
        prompt: str | None = None,
    ) -> ExecutionResult:
        if self.dry_run:
            return dry_run_result(role)

        started = time.monotonic()
        text = prompt or build_prompt(role, task.description, [entry.render() for entry in context])
        argv = self.build_argv(role)
        timeout = float(timeout_seconds) if timeout_seconds else self.timeout_seconds

        last_error: str | None = None
        last_kind = FAILURE_EXECUTION
        raw_output: str | None = None
        for attempt in range(1, self.max_retries + 1):
            _log.info(
                'headless_attempt task_id=%s role=%s attempt=%d/%d timeout_seconds=%s',
                task.id, Role(role).value, attempt, self.max_retries, timeout,
            )
            try:
                result = self.runner.run(argv, input_text=text, timeout_seconds=timeout, cwd=self.cwd)
            except ExecutableNotFoundError as exc:
                _log.error('headless_executable_missing task_id=%s executable=%s', task.id, exc.executable)
                return ExecutionResult(
                    success=False,
                    error=f'Model executable not found at: {exc.executable}',
                    duration_seconds=time.monotonic() - started,
                    attempts=attempt,
                    failure_kind=FAILURE_CONFIGURATION,
                )
            except OSError as exc:
                last_error = f'Failed to spawn model process: {exc}'
                last_kind = FAILURE_EXECUTION
            else:
                if result.timed_out:
                    last_error = f'Process timed out after {timeout:g}s'
                    last_kind = FAILURE_TIMEOUT
                elif result.returncode != 0:
                    last_error = f'Model exited with code {result.returncode}: {result.stderr.strip()}'
                    last_kind = FAILURE_EXECUTION
                else:
                    parsed = parse_output(role, result.stdout)
                    if parsed.success:
                        _log.info('headless_succeeded task_id=%s attempt=%d', task.id, attempt)
                        return ExecutionResult(
                            success=True,
                            output=parsed.data,
                            duration_seconds=time.monotonic() - started,
                            attempts=attempt,
                            raw_output=result.stdout,
                        )
                    last_error = parsed.error
                    last_kind = FAILURE_OUTPUT
                    raw_output = parsed.raw

            if attempt < self.max_retries:
                delay = self.backoff_seconds(attempt)
                _log.warning(
                    'headless_retry task_id=%s attempt=%d delay_seconds=%.2f error=%s',
                    task.id, attempt, delay, last_error,
                )
                time.sleep(delay)

        _log.error('headless_exhausted task_id=%s attempts=%d error=%s', task.id, self.max_retries, last_error)
        return ExecutionResult(
            success=False,
            error=failed_after(self.max_retries, last_error),
            duration_seconds=time.monotonic() - started,
            attempts=self.max_retries,
            failure_kind=last_kind,
            raw_output=raw_output,
        )
