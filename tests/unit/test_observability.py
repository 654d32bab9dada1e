from __future__ import annotations

import json
import logging
import sys

import devpipe.observability as observability
from devpipe.observability import (
    PipelineLogFormatter,
    configure_observability,
    current_feature_id,
    current_task_id,
    span,
    task_context,
)


def _record(message: str, *args, **extra) -> logging.LogRecord:
    record = logging.getLogger('devpipe.test').makeRecord('devpipe.test', logging.WARNING, 'test.py', 1, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_configure_installs_one_json_handler(monkeypatch):
    package_logger = logging.getLogger('devpipe')
    saved_handlers = list(package_logger.handlers)
    saved_level = package_logger.level
    monkeypatch.setattr(observability, '_handler_installed', False)
    try:
        package_logger.handlers = [h for h in saved_handlers if not isinstance(h.formatter, PipelineLogFormatter)]
        configure_observability(service_name='devpipe', otlp_endpoint=None)
        monkeypatch.setattr(observability, '_handler_installed', False)
        configure_observability(service_name='devpipe', otlp_endpoint='  ', level=logging.DEBUG)

        installed = [h for h in package_logger.handlers if isinstance(h.formatter, PipelineLogFormatter)]
        assert len(installed) == 1
        assert package_logger.level == logging.DEBUG
    finally:
        package_logger.handlers = saved_handlers
        package_logger.setLevel(saved_level)


def test_task_context_is_scoped_and_nests():
    assert current_task_id() is None
    with task_context(3, 'feat-a'):
        assert (current_task_id(), current_feature_id()) == (3, 'feat-a')
        with task_context(4, None):
            assert (current_task_id(), current_feature_id()) == (4, None)
        assert current_task_id() == 3
    assert (current_task_id(), current_feature_id()) == (None, None)


def test_formatter_writes_correlation_and_extra_fields():
    with task_context(12, 'feat-9'):
        line = json.loads(PipelineLogFormatter().format(_record('retry %s', 'scheduled', role='developer', attempt=2)))

    assert line['message'] == 'retry scheduled'
    assert line['level'] == 'warning'
    assert line['task_id'] == 12
    assert line['feature_id'] == 'feat-9'
    assert line['role'] == 'developer'
    assert line['attempt'] == 2
    assert 'event' not in line
    assert line['time'].endswith('+00:00')


def test_formatter_includes_traceback():
    try:
        raise RuntimeError('boom')
    except RuntimeError:
        record = _record('failed')
        record.exc_info = sys.exc_info()
    line = json.loads(PipelineLogFormatter().format(record))
    assert 'RuntimeError: boom' in line['traceback']
    assert 'task_id' not in line


def test_span_without_tracer_is_plain_context():
    entered = []
    with span(None, 'devpipe.test', {'a': 1}):
        entered.append(True)
    assert entered == [True]
