from __future__ import annotations

from devpipe.config import load_settings
from devpipe.scheduler import SchedulerConfig
from devpipe.domain.models import Role


def test_load_settings_defaults(monkeypatch):
    for name in (
        'DEVPIPE_DATABASE_URL',
        'DEVPIPE_MAX_CONCURRENT_TASKS',
        'DEVPIPE_MAX_CONCURRENT_DEVELOPER',
        'DEVPIPE_PIPELINE',
        'DEVPIPE_REASONER',
        'DEVPIPE_SELF_HEALING',
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.database_url.startswith('sqlite')
    assert settings.max_concurrent_tasks == 2
    assert settings.max_concurrent_by_role == {'architect': 20, 'developer': 1, 'reviewer': 5}
    assert settings.task_timeout_seconds == 3600.0
    assert settings.max_task_attempts == 3
    assert settings.self_healing_enabled is True
    assert settings.pipeline == 'forward'
    assert settings.reasoner == 'rules'
    assert settings.headless_max_retries == 3
    assert settings.interactive_max_retries == 1


def test_load_settings_reads_overrides(monkeypatch):
    monkeypatch.setenv('DEVPIPE_MAX_CONCURRENT_DEVELOPER', '3')
    monkeypatch.setenv('DEVPIPE_CHECK_INTERVAL_SECONDS', '2.5')
    monkeypatch.setenv('DEVPIPE_SELF_HEALING', 'off')
    monkeypatch.setenv('DEVPIPE_PIPELINE', 'review_loop')
    monkeypatch.setenv('DEVPIPE_DRY_RUN', '1')
    settings = load_settings()
    assert settings.max_concurrent_by_role['developer'] == 3
    assert settings.check_interval_seconds == 2.5
    assert settings.self_healing_enabled is False
    assert settings.pipeline == 'review_loop'
    assert settings.dry_run is True


def test_load_settings_bad_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv('DEVPIPE_MAX_TASK_ATTEMPTS', 'many')
    monkeypatch.setenv('DEVPIPE_TASK_TIMEOUT_SECONDS', 'soon')
    settings = load_settings()
    assert settings.max_task_attempts == 3
    assert settings.task_timeout_seconds == 3600.0


def test_load_settings_clamps_to_minimum(monkeypatch):
    monkeypatch.setenv('DEVPIPE_MAX_CONCURRENT_TASKS', '0')
    monkeypatch.setenv('DEVPIPE_MAX_CONCURRENT_ARCHITECT', '-4')
    settings = load_settings()
    assert settings.max_concurrent_tasks == 1
    assert settings.max_concurrent_by_role['architect'] == 0


def test_load_settings_unknown_choice_falls_back(monkeypatch):
    monkeypatch.setenv('DEVPIPE_PIPELINE', 'sideways')
    monkeypatch.setenv('DEVPIPE_REASONER', 'oracle')
    settings = load_settings()
    assert settings.pipeline == 'forward'
    assert settings.reasoner == 'rules'


def test_scheduler_config_from_settings_maps_roles(monkeypatch):
    monkeypatch.setenv('DEVPIPE_MAX_CONCURRENT_REVIEWER', '2')
    monkeypatch.setenv('DEVPIPE_MAX_TASK_ATTEMPTS', '5')
    config = SchedulerConfig.from_settings(load_settings())
    assert config.max_concurrent_by_role[Role.REVIEWER] == 2
    assert config.max_task_attempts == 5
