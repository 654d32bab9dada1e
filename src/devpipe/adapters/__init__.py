from __future__ import annotations

from devpipe.adapters.base import (
    ContextEntry,
    DRY_RUN_OUTPUTS,
    ExecutionResult,
    ExecutionStrategy,
    dry_run_result,
    failed_after,
)
from devpipe.adapters.completion import CompletionBus, CompletionReport, CompletionTicket
from devpipe.adapters.headless import HeadlessStrategy
from devpipe.adapters.interactive import InteractiveStrategy, scan_stdout_for_completion
from devpipe.adapters.process import ExecutableNotFoundError, ProcessOutput, ProcessRunner, RunningProcess

__all__ = [
    'CompletionBus',
    'CompletionReport',
    'CompletionTicket',
    'ContextEntry',
    'DRY_RUN_OUTPUTS',
    'ExecutableNotFoundError',
    'ExecutionResult',
    'ExecutionStrategy',
    'HeadlessStrategy',
    'InteractiveStrategy',
    'ProcessOutput',
    'ProcessRunner',
    'RunningProcess',
    'dry_run_result',
    'failed_after',
    'scan_stdout_for_completion',
]
