from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_name: str
    otel_endpoint: str | None
    dry_run: bool
    model_command: str
    model_name: str
    check_interval_seconds: float
    max_concurrent_tasks: int
    max_concurrent_by_role: dict[str, int]
    task_timeout_seconds: float
    max_task_attempts: int
    self_healing_enabled: bool
    headless_max_retries: int
    headless_retry_delay_seconds: float
    headless_timeout_seconds: float
    interactive_max_retries: int
    interactive_retry_delay_seconds: float
    interactive_timeout_seconds: float
    kill_grace_seconds: float
    completion_grace_seconds: float
    stop_wait_seconds: float
    pipeline: str
    reasoner: str
    deadlock_detection: bool
    api_base: str


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name, '') or '').strip().lower()
    if not raw:
        return default
    return raw in {'1', 'true', 'yes', 'on'}


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    value = str(os.getenv(name, default) or default).strip().lower()
    return value if value in choices else default


def load_settings() -> Settings:
    database_url = os.getenv('DEVPIPE_DATABASE_URL', 'sqlite+pysqlite:///devpipe.sqlite3')
    service_name = os.getenv('DEVPIPE_SERVICE_NAME', 'devpipe')
    otel_endpoint = os.getenv('DEVPIPE_OTEL_EXPORTER_OTLP_ENDPOINT')
    model_command = str(os.getenv('DEVPIPE_MODEL_COMMAND', 'claude') or 'claude').strip() or 'claude'
    model_name = str(os.getenv('DEVPIPE_MODEL', 'sonnet') or 'sonnet').strip() or 'sonnet'
    max_concurrent_by_role = {
        'architect': _env_int('DEVPIPE_MAX_CONCURRENT_ARCHITECT', 20, minimum=0),
        'developer': _env_int('DEVPIPE_MAX_CONCURRENT_DEVELOPER', 1, minimum=0),
        'reviewer': _env_int('DEVPIPE_MAX_CONCURRENT_REVIEWER', 5, minimum=0),
    }
    return Settings(
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        dry_run=_env_flag('DEVPIPE_DRY_RUN', False),
        model_command=model_command,
        model_name=model_name,
        check_interval_seconds=_env_float('DEVPIPE_CHECK_INTERVAL_SECONDS', 30.0, minimum=0.1),
        max_concurrent_tasks=_env_int('DEVPIPE_MAX_CONCURRENT_TASKS', 2, minimum=1),
        max_concurrent_by_role=max_concurrent_by_role,
        task_timeout_seconds=_env_float('DEVPIPE_TASK_TIMEOUT_SECONDS', 3600.0, minimum=1.0),
        max_task_attempts=_env_int('DEVPIPE_MAX_TASK_ATTEMPTS', 3, minimum=1),
        self_healing_enabled=_env_flag('DEVPIPE_SELF_HEALING', True),
        headless_max_retries=_env_int('DEVPIPE_HEADLESS_MAX_RETRIES', 3, minimum=1),
        headless_retry_delay_seconds=_env_float('DEVPIPE_HEADLESS_RETRY_DELAY_SECONDS', 1.0),
        headless_timeout_seconds=_env_float('DEVPIPE_HEADLESS_TIMEOUT_SECONDS', 300.0, minimum=1.0),
        interactive_max_retries=_env_int('DEVPIPE_INTERACTIVE_MAX_RETRIES', 1, minimum=1),
        interactive_retry_delay_seconds=_env_float('DEVPIPE_INTERACTIVE_RETRY_DELAY_SECONDS', 2.0),
        interactive_timeout_seconds=_env_float('DEVPIPE_INTERACTIVE_TIMEOUT_SECONDS', 600.0, minimum=1.0),
        kill_grace_seconds=_env_float('DEVPIPE_KILL_GRACE_SECONDS', 5.0),
        completion_grace_seconds=_env_float('DEVPIPE_COMPLETION_GRACE_SECONDS', 1.0),
        stop_wait_seconds=_env_float('DEVPIPE_STOP_WAIT_SECONDS', 60.0),
        pipeline=_env_choice('DEVPIPE_PIPELINE', 'forward', {'forward', 'review_loop'}),
        reasoner=_env_choice('DEVPIPE_REASONER', 'rules', {'rules', 'model'}),
        deadlock_detection=_env_flag('DEVPIPE_DEADLOCK_DETECTION', False),
        api_base=str(os.getenv('DEVPIPE_API_BASE', 'http://127.0.0.1:8000') or '').strip() or 'http://127.0.0.1:8000',
    )
