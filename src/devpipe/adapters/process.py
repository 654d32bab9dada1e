from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import shlex
import shutil
import subprocess
from threading import Lock, Thread
import time

_log = logging.getLogger(__name__)


class ExecutableNotFoundError(RuntimeError):
    def __init__(self, executable: str):
        super().__init__(f'executable not found: {executable}')
        self.executable = executable


@dataclass(frozen=True)
class ProcessOutput:
    stdout: str
    stderr: str
    returncode: int | None
    timed_out: bool
    duration_seconds: float


def split_command(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def resolve_executable(argv: list[str]) -> list[str]:
    if not argv:
        return argv
    first = str(argv[0]).strip()
    if not first:
        return argv
    resolved = shutil.which(first)
    if not resolved:
        return argv
    patched = list(argv)
    patched[0] = resolved
    return patched


def terminate_process(process: subprocess.Popen, *, grace_seconds: float) -> None:
    """Send SIGTERM, then SIGKILL if the process outlives the grace window."""
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=max(0.0, float(grace_seconds)))
        return
    except subprocess.TimeoutExpired:
        _log.warning('process_kill pid=%s grace_seconds=%s', process.pid, grace_seconds)
    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        _log.error('process_unreaped pid=%s', process.pid)


class RunningProcess:
    """A spawned child whose stdout/stderr are drained by pump threads."""

    def __init__(self, process: subprocess.Popen, *, started: float):
        self.process = process
        self.started = started
        self._lock = Lock()
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._workers = [
            Thread(target=self._pump, args=(process.stdout, self._stdout), daemon=True),
            Thread(target=self._pump, args=(process.stderr, self._stderr), daemon=True),
        ]
        for worker in self._workers:
            worker.start()

    def _pump(self, pipe, sink: list[str]) -> None:
        if pipe is None:
            return
        try:
            while True:
                chunk = pipe.readline()
                if chunk == '':
                    break
                with self._lock:
                    sink.append(chunk)
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def poll(self) -> int | None:
        return self.process.poll()

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def drain(self, timeout: float = 0.5) -> None:
        for worker in self._workers:
            worker.join(timeout=timeout)

    def stdout_text(self) -> str:
        with self._lock:
            return ''.join(self._stdout)

    def stderr_text(self) -> str:
        with self._lock:
            return ''.join(self._stderr)

    def terminate(self, *, grace_seconds: float) -> None:
        terminate_process(self.process, grace_seconds=grace_seconds)
        self.drain()


class ProcessRunner:
    """Spawns model CLI processes.

    ``run`` is a blocking single call used by headless execution; ``start``
    returns a handle for long-lived interactive sessions. A missing
    executable raises ``ExecutableNotFoundError``; every other outcome is
    reported through the return value.
    """

    def __init__(self, *, kill_grace_seconds: float = 5.0):
        self.kill_grace_seconds = max(0.0, float(kill_grace_seconds))

    def _popen(
        self,
        argv: list[str],
        *,
        with_stdin: bool,
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> subprocess.Popen:
        effective = resolve_executable(argv)
        try:
            return subprocess.Popen(
                effective,
                stdin=subprocess.PIPE if with_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=cwd,
                env=env,
            )
        except FileNotFoundError as exc:
            raise ExecutableNotFoundError(str(argv[0] if argv else '')) from exc

    def run(
        self,
        argv: list[str],
        *,
        input_text: str | None = None,
        timeout_seconds: float,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessOutput:
        started = time.monotonic()
        process = self._popen(argv, with_stdin=input_text is not None, cwd=cwd, env=env)
        try:
            stdout, stderr = process.communicate(input=input_text, timeout=max(0.05, float(timeout_seconds)))
        except subprocess.TimeoutExpired:
            _log.warning('process_timeout pid=%s timeout_seconds=%s', process.pid, timeout_seconds)
            terminate_process(process, grace_seconds=self.kill_grace_seconds)
            try:
                stdout, stderr = process.communicate(timeout=2)
            except (subprocess.TimeoutExpired, ValueError):
                stdout, stderr = '', ''
            return ProcessOutput(
                stdout=stdout or '',
                stderr=stderr or '',
                returncode=process.returncode,
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )
        return ProcessOutput(
            stdout=stdout or '',
            stderr=stderr or '',
            returncode=process.returncode,
            timed_out=False,
            duration_seconds=time.monotonic() - started,
        )

    def start(
        self,
        argv: list[str],
        *,
        input_text: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> RunningProcess:
        started = time.monotonic()
        process = self._popen(argv, with_stdin=input_text is not None, cwd=cwd, env=env)
        if input_text is not None and process.stdin is not None:
            try:
                process.stdin.write(input_text)
            except BrokenPipeError:
                _log.warning('process_stdin_closed pid=%s', process.pid)
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass
        return RunningProcess(process, started=started)


def child_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    for key, value in (extra or {}).items():
        env[str(key)] = str(value)
    return env
