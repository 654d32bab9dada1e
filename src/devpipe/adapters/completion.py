from __future__ import annotations

from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
import logging
from threading import Lock
import time
from typing import Any

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionReport:
    task_id: int
    status: str
    output: Any
    received_at: float

    @property
    def succeeded(self) -> bool:
        return self.status != 'failed'


class CompletionTicket:
    """One-shot completion slot for a single task id.

    Resolved at most once. Used as a context manager so the slot is
    released when the awaiting call returns.
    """

    def __init__(self, bus: CompletionBus, task_id: int):
        self.bus = bus
        self.task_id = int(task_id)
        self.future: Future[CompletionReport] = Future()

    def wait(self, timeout: float | None = None) -> CompletionReport | None:
        try:
            return self.future.result(timeout=timeout)
        except FutureTimeout:
            return None

    def done(self) -> bool:
        return self.future.done()

    def __enter__(self) -> CompletionTicket:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.bus.release(self)


class CompletionBus:
    def __init__(self):
        self._lock = Lock()
        self._tickets: dict[int, CompletionTicket] = {}

    def register(self, task_id: int) -> CompletionTicket:
        key = int(task_id)
        with self._lock:
            if key in self._tickets:
                raise ValueError(f'completion already awaited for task {key}')
            ticket = CompletionTicket(self, key)
            self._tickets[key] = ticket
            return ticket

    def release(self, ticket: CompletionTicket) -> None:
        with self._lock:
            if self._tickets.get(ticket.task_id) is ticket:
                del self._tickets[ticket.task_id]

    def is_waiting(self, task_id: int) -> bool:
        with self._lock:
            return int(task_id) in self._tickets

    def publish(self, task_id: int, output: Any, *, status: str = 'complete') -> bool:
        key = int(task_id)
        with self._lock:
            ticket = self._tickets.get(key)
            if ticket is None or ticket.future.done():
                _log.info('completion_unclaimed task_id=%s status=%s', key, status)
                return False
            ticket.future.set_result(
                CompletionReport(task_id=key, status=status, output=output, received_at=time.monotonic())
            )
        _log.info('completion_delivered task_id=%s status=%s', key, status)
        return True
