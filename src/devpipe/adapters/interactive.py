from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from devpipe.adapters.base import (
    FAILURE_CONFIGURATION,
    FAILURE_EXECUTION,
    FAILURE_NO_COMPLETION,
    FAILURE_TIMEOUT,
    ContextEntry,
    ExecutionResult,
    dry_run_result,
    failed_after,
)
from devpipe.adapters.completion import CompletionBus, CompletionReport
from devpipe.adapters.headless import has_flag
from devpipe.adapters.process import (
    ExecutableNotFoundError,
    ProcessRunner,
    RunningProcess,
    child_env,
    split_command,
)
from devpipe.domain.models import Role, Task
from devpipe.role_prompts import ROLE_PROMPTS, extract_balanced_object, role_tools

_log = logging.getLogger(__name__)

COMPLETION_TOOL = 'reportTaskCompletion'
COMPLETION_MARKER = 'TASK_COMPLETION_REPORT:'
_REPORT_KEY_RE = re.compile(r'"filesCreated"\s*:')


def scan_stdout_for_completion(stdout: str) -> dict[str, Any] | None:
    """Recover a completion report printed to stdout.

    A line starting with the completion marker wins; otherwise the last
    JSON object that carries a ``filesCreated`` key is used.
    """
    text = str(stdout or '')
    for line in reversed(text.splitlines()):
        stripped = line.strip()
        if stripped.startswith(COMPLETION_MARKER):
            payload = _load_object(stripped[len(COMPLETION_MARKER):].strip())
            if payload is not None:
                return payload

    for match in reversed(list(_REPORT_KEY_RE.finditer(text))):
        start = text.rfind('{', 0, match.start())
        while start != -1:
            candidate = extract_balanced_object(text[start:])
            payload = _load_object(candidate) if candidate else None
            if payload is not None and 'filesCreated' in payload:
                return payload
            start = text.rfind('{', 0, start)
    return None


def _load_object(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class InteractiveStrategy:
    """Long-lived model sessions that must report completion out of band.

    Completion arrives through ``CompletionBus`` under the task id. The
    registration lives only for the duration of one ``execute`` call.
    """

    def __init__(
        self,
        *,
        completion_bus: CompletionBus,
        command: str = 'claude',
        model: str | None = 'sonnet',
        max_retries: int = 1,
        retry_delay_seconds: float = 2.0,
        timeout_seconds: float = 600.0,
        completion_grace_seconds: float = 1.0,
        kill_grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
        api_base: str | None = None,
        runner: ProcessRunner | None = None,
        dry_run: bool = False,
        cwd: str | None = None,
    ):
        self.completion_bus = completion_bus
        self.command = command
        self.model = model
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self.timeout_seconds = max(0.05, float(timeout_seconds))
        self.completion_grace_seconds = max(0.0, float(completion_grace_seconds))
        self.kill_grace_seconds = max(0.0, float(kill_grace_seconds))
        self.poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self.api_base = api_base
        self.runner = runner or ProcessRunner(kill_grace_seconds=kill_grace_seconds)
        self.dry_run = bool(dry_run)
        self.cwd = cwd

    def build_prompt(self, role: Role | str, task: Task, context: list[ContextEntry]) -> str:
        role = Role(role)
        lines = [
            ROLE_PROMPTS[role].system,
            '',
            f'You are working on task #{task.id}.',
            f'Feature: {task.feature_id}',
            f'Role: {role.value}',
            f'Attempt: {max(1, task.attempts)}',
            '',
            'TASK:',
            task.description,
        ]
        if context:
            lines.extend(['', 'CONTEXT:'])
            lines.extend(f'- {entry.summary()}' for entry in context)
        lines.extend(
            [
                '',
                'COMPLETION:',
                f'When the work is finished you MUST call the {COMPLETION_TOOL} tool with:',
                f'- taskId: {task.id}',
                '- status: "complete" or "failed"',
                '- output: {"filesCreated": [...], "filesModified": [...], "testsAdded": [...],',
                '           "summary": "...", "details": "...", "errors": [...], "nextSteps": [...]}',
                f'If the tool is unavailable, run `devpipe complete-task {task.id} --output-json \'<output>\'`'
                f' or print one line `{COMPLETION_MARKER} <output>` as your final message.',
            ]
        )
        return '\n'.join(lines)

    def build_argv(self, role: Role | str, prompt: str) -> list[str]:
        argv = split_command(self.command)
        if self.model and not has_flag(argv, '--model'):
            argv.extend(['--model', self.model])
        if not has_flag(argv, '--allowedTools'):
            argv.extend(['--allowedTools', ','.join(role_tools(role))])
        argv.append(prompt)
        return argv

    @property
    def max_duration_seconds(self) -> float:
        per_attempt = self.timeout_seconds + self.kill_grace_seconds
        return self.max_retries * per_attempt + (self.max_retries - 1) * self.retry_delay_seconds

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
        text = prompt or self.build_prompt(role, task, context)
        timeout = float(timeout_seconds) if timeout_seconds else self.timeout_seconds

        last_error: str | None = None
        last_kind = FAILURE_EXECUTION
        raw_output: str | None = None
        for attempt in range(1, self.max_retries + 1):
            _log.info(
                'interactive_attempt task_id=%s role=%s attempt=%d/%d timeout_seconds=%s',
                task.id, Role(role).value, attempt, self.max_retries, timeout,
            )
            try:
                ticket = self.completion_bus.register(task.id)
            except ValueError as exc:
                _log.warning('interactive_already_awaited task_id=%s', task.id)
                last_error = f'Cannot await completion: {exc}'
                last_kind = FAILURE_EXECUTION
            else:
                with ticket:
                    try:
                        handle = self.runner.start(
                            self.build_argv(role, text),
                            cwd=self.cwd,
                            env=self._env(task),
                        )
                    except ExecutableNotFoundError as exc:
                        _log.error('interactive_executable_missing task_id=%s executable=%s', task.id, exc.executable)
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
                        deadline = time.monotonic() + timeout
                        while True:
                            report = ticket.wait(timeout=self.poll_interval_seconds)
                            if report is not None:
                                self._finish_after_completion(handle)
                                return self._from_report(report, started=started, attempt=attempt)

                            if handle.poll() is not None:
                                handle.drain()
                                report = ticket.wait(timeout=0)
                                if report is not None:
                                    return self._from_report(report, started=started, attempt=attempt)
                                stdout = handle.stdout_text()
                                raw_output = stdout
                                fallback = scan_stdout_for_completion(stdout)
                                if fallback is not None:
                                    _log.info('interactive_stdout_completion task_id=%s', task.id)
                                    return ExecutionResult(
                                        success=True,
                                        output=fallback,
                                        duration_seconds=time.monotonic() - started,
                                        attempts=attempt,
                                        raw_output=stdout,
                                    )
                                if handle.returncode == 0:
                                    last_error = f'Process exited without calling {COMPLETION_TOOL}'
                                    last_kind = FAILURE_NO_COMPLETION
                                else:
                                    last_error = (
                                        f'Process exited with code {handle.returncode}: '
                                        f'{handle.stderr_text().strip()}'
                                    )
                                    last_kind = FAILURE_EXECUTION
                                break

                            if time.monotonic() >= deadline:
                                _log.warning('interactive_timeout task_id=%s timeout_seconds=%s', task.id, timeout)
                                handle.terminate(grace_seconds=self.kill_grace_seconds)
                                last_error = f'Task timed out after {timeout:g}s'
                                last_kind = FAILURE_TIMEOUT
                                raw_output = handle.stdout_text()
                                break

            if attempt < self.max_retries:
                _log.warning(
                    'interactive_retry task_id=%s attempt=%d delay_seconds=%.2f error=%s',
                    task.id, attempt, self.retry_delay_seconds, last_error,
                )
                time.sleep(self.retry_delay_seconds)

        return ExecutionResult(
            success=False,
            error=failed_after(self.max_retries, last_error),
            duration_seconds=time.monotonic() - started,
            attempts=self.max_retries,
            failure_kind=last_kind,
            raw_output=raw_output,
        )

    def _env(self, task: Task) -> dict[str, str]:
        extra = {'DEVPIPE_TASK_ID': str(task.id), 'DEVPIPE_FEATURE_ID': task.feature_id}
        if self.api_base:
            extra['DEVPIPE_API_BASE'] = self.api_base
        return child_env(extra)

    def _finish_after_completion(self, handle: RunningProcess) -> None:
        if handle.wait(timeout=self.completion_grace_seconds) is None:
            handle.terminate(grace_seconds=self.kill_grace_seconds)
        else:
            handle.drain()

    @staticmethod
    def _from_report(report: CompletionReport, *, started: float, attempt: int) -> ExecutionResult:
        duration = time.monotonic() - started
        if report.succeeded:
            return ExecutionResult(success=True, output=report.output, duration_seconds=duration, attempts=attempt)
        errors = report.output.get('errors') if isinstance(report.output, dict) else None
        detail = '; '.join(str(e) for e in errors) if isinstance(errors, list) and errors else 'no details given'
        return ExecutionResult(
            success=False,
            output=report.output,
            error=f'Task reported failure: {detail}',
            duration_seconds=duration,
            attempts=attempt,
            failure_kind=FAILURE_EXECUTION,
        )
