from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
import sys
from threading import Lock
from typing import Any, Iterator

_log = logging.getLogger(__name__)

_current_task: ContextVar[int | None] = ContextVar('devpipe_task_id', default=None)
_current_feature: ContextVar[str | None] = ContextVar('devpipe_feature_id', default=None)

# Extra attributes a log call may pass that are copied into the JSON line.
_EXTRA_FIELDS = ('role', 'event', 'attempt')


@contextmanager
def task_context(task_id: int | None, feature_id: str | None) -> Iterator[None]:
    """Tag every log line written inside the block with the running task."""
    task_token = _current_task.set(task_id)
    feature_token = _current_feature.set(feature_id)
    try:
        yield
    finally:
        _current_feature.reset(feature_token)
        _current_task.reset(task_token)


def current_task_id() -> int | None:
    return _current_task.get()


def current_feature_id() -> str | None:
    return _current_feature.get()


class PipelineLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            'time': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname.lower(),
            'logger': record.name,
            'message': record.getMessage(),
        }
        task_id = getattr(record, 'task_id', None) or _current_task.get()
        feature_id = getattr(record, 'feature_id', None) or _current_feature.get()
        if task_id is not None:
            line['task_id'] = task_id
        if feature_id:
            line['feature_id'] = feature_id
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                line[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            line['traceback'] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


_state_lock = Lock()
_handler_installed = False
_tracing_endpoint: str | None = None


def configure_observability(*, service_name: str, otlp_endpoint: str | None, level: int = logging.INFO) -> None:
    """Install JSON logging on the ``devpipe`` logger and, when an endpoint is given, OTLP tracing.

    Safe to call more than once: the handler is added a single time and tracing
    is only reinstalled when the endpoint changes.
    """
    global _handler_installed
    with _state_lock:
        if not _handler_installed:
            package_logger = logging.getLogger('devpipe')
            if not any(isinstance(h.formatter, PipelineLogFormatter) for h in package_logger.handlers):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(PipelineLogFormatter())
                package_logger.addHandler(handler)
            package_logger.setLevel(level)
            _handler_installed = True

    endpoint = (otlp_endpoint or '').strip()
    if endpoint:
        _install_tracing(service_name, endpoint)


def _install_tracing(service_name: str, endpoint: str) -> None:
    global _tracing_endpoint
    with _state_lock:
        if _tracing_endpoint == endpoint:
            return
        try:
            from opentelemetry import trace
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.resources import Resource
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import BatchSpanProcessor
        except ImportError:
            _log.warning('tracing_disabled reason=opentelemetry_missing endpoint=%s', endpoint)
            return
        provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _tracing_endpoint = endpoint
        _log.info('tracing_enabled service=%s endpoint=%s', service_name, endpoint)


def get_tracer(name: str):
    try:
        from opentelemetry import trace
    except ImportError:
        return None
    return trace.get_tracer(name)


@contextmanager
def span(tracer, name: str, attributes: dict[str, Any]) -> Iterator[None]:
    if tracer is None:
        yield
        return
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(key, value)
        yield
