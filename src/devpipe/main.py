from __future__ import annotations

import logging

from devpipe.adapters.completion import CompletionBus
from devpipe.adapters.headless import HeadlessStrategy
from devpipe.adapters.interactive import InteractiveStrategy
from devpipe.adapters.process import ProcessRunner
from devpipe.api import create_app
from devpipe.config import Settings, load_settings
from devpipe.db import Database, SqlPipelineStore
from devpipe.domain.models import Role
from devpipe.domain.pipeline import build_pipeline
from devpipe.observability import configure_observability
from devpipe.reasoning import build_reasoner
from devpipe.repository import InMemoryPipelineStore, PipelineStore
from devpipe.scheduler import Scheduler, SchedulerConfig
from devpipe.service import PipelineService

_log = logging.getLogger(__name__)


def build_store(settings: Settings) -> PipelineStore:
    try:
        db = Database(settings.database_url)
        db.create_schema()
        return SqlPipelineStore(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory store')
        return InMemoryPipelineStore()


def build_service(settings: Settings) -> PipelineService:
    store = build_store(settings)
    bus = CompletionBus()
    runner = ProcessRunner(kill_grace_seconds=settings.kill_grace_seconds)
    headless = HeadlessStrategy(
        command=settings.model_command,
        model=settings.model_name,
        max_retries=settings.headless_max_retries,
        retry_delay_seconds=settings.headless_retry_delay_seconds,
        timeout_seconds=settings.headless_timeout_seconds,
        runner=runner,
        dry_run=settings.dry_run,
    )
    interactive = InteractiveStrategy(
        completion_bus=bus,
        command=settings.model_command,
        model=settings.model_name,
        max_retries=settings.interactive_max_retries,
        retry_delay_seconds=settings.interactive_retry_delay_seconds,
        timeout_seconds=settings.interactive_timeout_seconds,
        completion_grace_seconds=settings.completion_grace_seconds,
        kill_grace_seconds=settings.kill_grace_seconds,
        api_base=settings.api_base,
        runner=runner,
        dry_run=settings.dry_run,
    )
    scheduler = Scheduler(
        store=store,
        strategies={
            Role.ARCHITECT: headless,
            Role.DEVELOPER: interactive,
            Role.REVIEWER: headless,
        },
        config=SchedulerConfig.from_settings(settings),
        reasoner=build_reasoner(settings.reasoner, strategy=headless),
        pipeline=build_pipeline(settings.pipeline),
    )
    return PipelineService(store=store, scheduler=scheduler, completion_bus=bus)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    return create_app(service=build_service(settings))


app = build_app()
