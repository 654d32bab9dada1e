from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import json
import logging
from threading import Event, Lock, RLock, Thread
import time
from typing import Any, Callable

from devpipe.adapters.base import FAILURE_TIMEOUT, ContextEntry, ExecutionResult, ExecutionStrategy
from devpipe.deadlock import DeadlockResolver, DependencyExtractor, RegexDependencyExtractor, WorkItem
from devpipe.domain.events import EventType, normalize_event_type
from devpipe.domain.models import (
    CONTEXT_TYPE_BY_ROLE,
    Actor,
    ContextType,
    EntityType,
    Feature,
    FeatureStatus,
    Priority,
    Role,
    Task,
    TaskStatus,
    can_transition,
)
from devpipe.domain.pipeline import PipelineGraph, forward_pipeline
from devpipe.observability import get_tracer, span, task_context
from devpipe.reasoning import ReasoningPort, RuleBasedReasoner
from devpipe.repository import PipelineStore, utc_now

_log = logging.getLogger(__name__)

SELF_HEALING_DESCRIPTION = 'Self-Healing: Automatic recovery and improvement tasks'
MIN_TASKS_FOR_COMPLETION = 3

Listener = Callable[[dict], None]
Launcher = Callable[[Callable[[], None], str], None]


def _thread_launcher(fn: Callable[[], None], name: str) -> None:
    Thread(target=fn, name=name, daemon=True).start()


@dataclass(frozen=True)
class SchedulerConfig:
    check_interval_seconds: float = 30.0
    max_concurrent_tasks: int = 2
    max_concurrent_by_role: dict[Role, int] = field(
        default_factory=lambda: {Role.ARCHITECT: 20, Role.DEVELOPER: 1, Role.REVIEWER: 5}
    )
    task_timeout_seconds: float = 3600.0
    max_task_attempts: int = 3
    self_healing_enabled: bool = True
    stop_wait_seconds: float = 60.0
    deadlock_detection: bool = False
    pending_scan_limit: int = 100

    @classmethod
    def from_settings(cls, settings) -> SchedulerConfig:
        return cls(
            check_interval_seconds=settings.check_interval_seconds,
            max_concurrent_tasks=settings.max_concurrent_tasks,
            max_concurrent_by_role={Role(k): int(v) for k, v in settings.max_concurrent_by_role.items()},
            task_timeout_seconds=settings.task_timeout_seconds,
            max_task_attempts=settings.max_task_attempts,
            self_healing_enabled=settings.self_healing_enabled,
            stop_wait_seconds=settings.stop_wait_seconds,
            deadlock_detection=settings.deadlock_detection,
        )


@dataclass
class RunningTask:
    task_id: int
    role: Role
    feature_id: str
    started: float
    finishing: bool = False


class Scheduler:
    """Drives features through the role pipeline.

    One tick sweeps timed-out work, computes free capacity per role and
    dispatches pending tasks to the execution strategy registered for
    their role. Task bodies run on worker threads; their outcomes are
    written back by the same worker. The in-memory running set is the
    only guard against double dispatch, so a single Scheduler must own
    the store's ``in_progress`` transitions.
    """

    def __init__(
        self,
        *,
        store: PipelineStore,
        strategies: dict[Role, ExecutionStrategy],
        config: SchedulerConfig | None = None,
        reasoner: ReasoningPort | None = None,
        pipeline: PipelineGraph | None = None,
        extractor: DependencyExtractor | None = None,
        launcher: Launcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        missing = [role.value for role in Role if role not in strategies]
        if missing:
            raise ValueError(f'no execution strategy for roles: {", ".join(missing)}')
        self.store = store
        self.strategies = dict(strategies)
        self.config = config or SchedulerConfig()
        self.reasoner = reasoner or RuleBasedReasoner()
        self.pipeline = pipeline or forward_pipeline()
        self.extractor = extractor or RegexDependencyExtractor()
        self._launch = launcher or _thread_launcher
        self._clock = clock
        self._sleep = sleep
        self._tracer = get_tracer('devpipe.scheduler')

        self._lock = Lock()
        self._tick_lock = Lock()
        self._self_healing_lock = Lock()
        self._outcome_lock = RLock()
        self._running: dict[int, RunningTask] = {}
        self._listeners: list[Listener] = []
        self._boosted: set[int] = set()
        self._unblocked: set[int] = set()
        self._seen_deadlocks: set[tuple[str, tuple[int, ...]]] = set()
        self._self_healing_feature_id: str | None = None

        self._started = False
        self._paused = False
        self._development_mode = False
        self._stop_event = Event()
        self._wake = Event()
        self._loop_thread: Thread | None = None

        self.deadlocks = DeadlockResolver(
            reasoner=self.reasoner,
            prioritize=self._prioritize_item,
            unblock=self._unblock_item,
            extractor=self.extractor,
        )
        self._check_timeout_budget()

    def _check_timeout_budget(self) -> None:
        # The stuck-task sweep must outlast a strategy's own retries, or it re-dispatches live work.
        for role, strategy in self.strategies.items():
            budget = getattr(strategy, 'max_duration_seconds', None)
            if budget is not None and budget >= self.config.task_timeout_seconds:
                _log.warning(
                    'task_timeout_below_strategy_budget role=%s budget_seconds=%.0f task_timeout_seconds=%.0f',
                    role.value, budget, self.config.task_timeout_seconds,
                )

    # Events

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: str | EventType, **payload: Any) -> dict:
        event = {'type': normalize_event_type(event_type), **payload}
        _log.debug('scheduler_event type=%s payload=%s', event['type'], payload)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                _log.exception('event_listener_failed type=%s', event['type'])
        return event

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def development_mode(self) -> bool:
        return self._development_mode

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop_event.clear()
        self.recover_orphaned_tasks()
        self.store.add_audit(action='orchestrator-started', actor=Actor.SYSTEM.value, details=self._config_details())
        self.emit(EventType.ORCHESTRATOR_STARTED)
        self._loop_thread = Thread(target=self._loop, name='devpipe-scheduler', daemon=True)
        self._loop_thread.start()
        _log.info('scheduler_started interval_seconds=%s', self.config.check_interval_seconds)

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._stop_event.set()
        self._wake.set()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=5)
            self._loop_thread = None
        if not self.wait_for_idle(self.config.stop_wait_seconds):
            with self._lock:
                remaining = len(self._running)
            _log.warning('force_stopping running_tasks=%d', remaining)
            self.emit(EventType.WARNING, message=f'Force stopping with {remaining} tasks still running')
        self.store.add_audit(action='orchestrator-stopped', actor=Actor.SYSTEM.value)
        self.emit(EventType.ORCHESTRATOR_STOPPED)
        _log.info('scheduler_stopped')

    def pause(self) -> None:
        self._paused = True
        self.store.add_audit(action='orchestrator-paused', actor=Actor.USER.value)
        self.emit(EventType.ORCHESTRATOR_PAUSED)

    def resume(self) -> None:
        self._paused = False
        self.store.add_audit(action='orchestrator-resumed', actor=Actor.USER.value)
        self.emit(EventType.ORCHESTRATOR_RESUMED)

    def start_development(self) -> None:
        self._development_mode = True
        self.store.add_audit(action='development-started', actor=Actor.USER.value)
        self.emit(EventType.DEVELOPMENT_STARTED)
        if self._loop_thread is not None and self._loop_thread.is_alive():
            self._wake.set()
        else:
            self.tick()

    def stop_development(self) -> None:
        self._development_mode = False
        self.store.add_audit(action='development-stopped', actor=Actor.USER.value)
        self.emit(EventType.DEVELOPMENT_STOPPED)

    def wait_for_idle(self, timeout_seconds: float, *, poll_seconds: float = 0.1) -> bool:
        deadline = self._clock() + max(0.0, float(timeout_seconds))
        while True:
            with self._lock:
                if not self._running:
                    return True
            if self._clock() >= deadline:
                return False
            self._sleep(poll_seconds)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake.wait(timeout=self.config.check_interval_seconds)
            self._wake.clear()
            if self._stop_event.is_set():
                break
            self.tick()

    def tick(self) -> int:
        if self._paused or not self._development_mode:
            return 0
        return self.process_next_tasks()

    def recover_orphaned_tasks(self) -> int:
        recovered = 0
        for task in self.store.list_tasks(status=TaskStatus.IN_PROGRESS):
            with self._lock:
                if task.id in self._running:
                    continue
            self._move_task(task, TaskStatus.PENDING, reason='recovered after restart')
            self.emit(EventType.TASK_RECOVERED, task_id=task.id, feature_id=task.feature_id)
            recovered += 1
        if recovered:
            _log.info('tasks_recovered count=%d', recovered)
        return recovered

    # Tick

    def process_next_tasks(self) -> int:
        if not self._tick_lock.acquire(blocking=False):
            _log.debug('tick_skipped reason=already_running')
            return 0
        try:
            self._sweep_stuck_tasks()
            if self.config.deadlock_detection:
                self._check_deadlocks()
            return self._dispatch_pending()
        except Exception as exc:
            _log.exception('tick_failed')
            self.emit(EventType.ERROR, error=str(exc), stage='tick')
            if self.config.self_healing_enabled:
                self._safe_self_healing_task('orchestrator-error', f'Scheduler tick failed: {exc}')
            return 0
        finally:
            self._tick_lock.release()

    def _sweep_stuck_tasks(self) -> None:
        now = self._clock()
        timeout = self.config.task_timeout_seconds
        with self._lock:
            stuck = [r for r in self._running.values() if not r.finishing and now - r.started > timeout]
            for entry in stuck:
                del self._running[entry.task_id]
        for entry in stuck:
            elapsed = now - entry.started
            _log.warning('task_timeout task_id=%s role=%s elapsed_seconds=%.1f', entry.task_id, entry.role.value, elapsed)
            self.emit(EventType.TASK_TIMEOUT, task_id=entry.task_id, feature_id=entry.feature_id, elapsed_seconds=elapsed)
            try:
                with self._outcome_lock:
                    task = self.store.get_task(entry.task_id)
                    if task is not None and task.status == TaskStatus.IN_PROGRESS:
                        self._handle_failure(task, f'Task timed out after {elapsed:.0f}s', failure_kind=FAILURE_TIMEOUT)
            except Exception as exc:
                _log.exception('timeout_handling_failed task_id=%s', entry.task_id)
                self.emit(EventType.ERROR, task_id=entry.task_id, error=str(exc), stage='sweep')

    def _capacity(self) -> tuple[dict[Role, int], int]:
        with self._lock:
            running_by_role = Counter(entry.role for entry in self._running.values())
            total = len(self._running)
        global_limit = max(0, int(self.config.max_concurrent_tasks))
        per_role = {
            role: max(0, min(int(self.config.max_concurrent_by_role.get(role, global_limit)), global_limit) - running_by_role[role])
            for role in Role
        }
        return per_role, max(0, global_limit - total)

    def _dispatch_pending(self) -> int:
        role_left, global_left = self._capacity()
        if global_left <= 0:
            return 0
        candidates = self._order_candidates(self.store.list_pending_tasks(limit=self.config.pending_scan_limit))
        dispatched = 0
        for task in candidates:
            if global_left <= 0:
                break
            try:
                with self._lock:
                    if task.id in self._running:
                        continue
                feature = self.store.get_feature(task.feature_id)
                if feature is None or feature.status in {FeatureStatus.FAILED, FeatureStatus.COMPLETE}:
                    continue
                if role_left.get(task.role, 0) <= 0:
                    continue
                if self._is_gated(task):
                    continue
                if task.attempts >= self.config.max_task_attempts:
                    _log.warning('task_attempts_exhausted task_id=%s attempts=%d', task.id, task.attempts)
                    with self._outcome_lock:
                        self._handle_failure(task, f'Max attempts ({self.config.max_task_attempts}) exceeded')
                    continue
                self._start_task(task, feature)
                role_left[task.role] -= 1
                global_left -= 1
                dispatched += 1
            except Exception as exc:
                _log.exception('dispatch_failed task_id=%s', task.id)
                self.emit(EventType.ERROR, task_id=task.id, error=str(exc), stage='dispatch')
        return dispatched

    def _order_candidates(self, pending: list[Task]) -> list[Task]:
        ordered = sorted(pending, key=lambda t: t.id not in self._boosted)
        if len(ordered) < 2:
            return ordered
        pick = self.reasoner.select_next_task(ordered)
        if pick is not None and pick in ordered and pick is not ordered[0]:
            ordered.remove(pick)
            ordered.insert(0, pick)
        return ordered

    def _start_task(self, task: Task, feature: Feature) -> None:
        task = self._move_task(task, TaskStatus.IN_PROGRESS, reason='dispatched', started_at=utc_now())
        task = self.store.increment_attempts(task.id)
        if feature.status == FeatureStatus.PENDING:
            self._move_feature(feature, FeatureStatus.IN_PROGRESS, reason='first task dispatched')
            self.emit(EventType.FEATURE_STARTED, feature_id=feature.id)
        entry = RunningTask(task_id=task.id, role=task.role, feature_id=task.feature_id, started=self._clock())
        with self._lock:
            self._running[task.id] = entry
            self._boosted.discard(task.id)
            self._unblocked.discard(task.id)
        _log.info('task_started task_id=%s role=%s attempt=%d', task.id, task.role.value, task.attempts)
        self.emit(EventType.TASK_STARTED, task_id=task.id, feature_id=task.feature_id, role=task.role.value, attempt=task.attempts)
        self._launch(lambda: self._run_task(task, entry), f'devpipe-task-{task.id}')

    def _run_task(self, task: Task, entry: RunningTask) -> None:
        with task_context(task.id, task.feature_id):
            try:
                context = self.build_task_context(task)
                attributes = {'devpipe.task_id': task.id, 'devpipe.role': task.role.value, 'devpipe.attempt': task.attempts}
                with span(self._tracer, 'devpipe.task.execute', attributes):
                    result = self.strategies[task.role].execute(task.role, task, context)
            except Exception as exc:
                _log.exception('task_execution_error task_id=%s', task.id)
                result = ExecutionResult(success=False, error=f'Execution error: {exc}')

            with self._lock:
                if self._running.get(task.id) is not entry:
                    _log.warning('task_result_discarded task_id=%s reason=no_longer_running', task.id)
                    return
                entry.finishing = True

            try:
                with self._outcome_lock:
                    current = self.store.get_task(task.id) or task
                    if result.success:
                        self._handle_success(current, result.output)
                    else:
                        self._handle_failure(current, result.error or 'unknown error', failure_kind=result.failure_kind)
            except Exception as exc:
                _log.exception('task_outcome_failed task_id=%s', task.id)
                self.emit(EventType.ERROR, task_id=task.id, error=str(exc), stage='outcome')
            finally:
                with self._lock:
                    if self._running.get(task.id) is entry:
                        del self._running[task.id]

    # Context

    def build_task_context(self, task: Task) -> list[ContextEntry]:
        entries: list[ContextEntry] = []
        feature = self.store.get_feature(task.feature_id)
        if feature is not None:
            entries.append(ContextEntry(kind='feature', content=feature.description))
        for row in self.store.list_contexts(task.feature_id):
            entries.append(ContextEntry(kind=row.type.value, content=_decode_content(row.content), author=row.author))
        if task.role in {Role.DEVELOPER, Role.REVIEWER}:
            discoveries = self.store.list_discoveries(task.feature_id)
            if discoveries:
                entries.append(
                    ContextEntry(
                        kind='technical_discoveries',
                        content=[{'type': d.type, 'description': d.description, 'impact': d.impact} for d in discoveries],
                    )
                )
            decisions = self.store.list_decisions(task.feature_id)
            if decisions:
                entries.append(
                    ContextEntry(
                        kind='architecture_decisions',
                        content=[
                            {
                                'decision': d.decision,
                                'rationale': d.rationale,
                                'alternatives': d.alternatives,
                                'consequences': d.consequences,
                            }
                            for d in decisions
                        ],
                    )
                )
        if task.role == Role.DEVELOPER:
            stories = self.store.list_user_stories_for_task(task.id)
            if stories:
                entries.append(
                    ContextEntry(
                        kind='user_stories',
                        content=[
                            {'title': s.title, 'description': s.description, 'acceptanceCriteria': s.acceptance_criteria}
                            for s in stories
                        ],
                    )
                )
        return entries

    # Outcomes

    def _handle_success(self, task: Task, output: Any) -> None:
        task = self._move_task(
            task,
            TaskStatus.COMPLETE,
            reason='execution succeeded',
            output=output,
            error=None,
            completed_at=utc_now(),
        )
        _log.info('task_completed task_id=%s role=%s', task.id, task.role.value)
        self.emit(EventType.TASK_COMPLETED, task_id=task.id, feature_id=task.feature_id, role=task.role.value)

        if task.role == Role.ARCHITECT and isinstance(output, dict):
            try:
                self._process_architect_output(task, output)
            except Exception as exc:
                _log.exception('architect_processing_failed task_id=%s', task.id)
                self.emit(EventType.ARCHITECT_PROCESSING_ERROR, task_id=task.id, error=str(exc))

        self.store.add_context(
            feature_id=task.feature_id,
            type=CONTEXT_TYPE_BY_ROLE[task.role],
            content=json.dumps(output, ensure_ascii=False, default=str),
            author=task.role.value,
        )

        feature = self.store.get_feature(task.feature_id)
        next_role = self._next_role(task, output)
        if next_role is not None and self.pipeline.is_backward(task.role, next_role):
            self._create_next_task(feature, next_role, backward=True)
            return
        if self._check_feature_completion(feature):
            return
        if next_role is not None:
            self._create_next_task(feature, next_role)

    def _next_role(self, task: Task, output: Any) -> Role | None:
        options = self.pipeline.candidates(task.role, output)
        if not options:
            return None
        picked = self.reasoner.determine_next_role(task, output, options)
        return picked if picked in options else options[0]

    def _check_feature_completion(self, feature: Feature | None) -> bool:
        if feature is None or feature.status != FeatureStatus.IN_PROGRESS:
            return False
        tasks = self.store.list_tasks(feature_id=feature.id)
        if len(tasks) < MIN_TASKS_FOR_COMPLETION:
            return False
        if any(t.status != TaskStatus.COMPLETE for t in tasks):
            return False
        if set(self.pipeline.order) - {t.role for t in tasks}:
            return False
        if self._feedback_pending(tasks):
            return False
        self._move_feature(feature, FeatureStatus.COMPLETE, reason=f'all {len(tasks)} tasks complete')
        _log.info('feature_completed feature_id=%s tasks=%d', feature.id, len(tasks))
        self.emit(EventType.FEATURE_COMPLETED, feature_id=feature.id, tasks=len(tasks))
        return True

    def _feedback_pending(self, tasks: list[Task]) -> bool:
        # The latest task of a loop's source role must not still be sending work back.
        for edge in self.pipeline.edges:
            if edge.condition is None or not self.pipeline.is_backward(edge.source, edge.target):
                continue
            latest = [t for t in tasks if t.role == edge.source]
            if latest and edge.applies(latest[-1].output):
                return True
        return False

    def _create_next_task(self, feature: Feature | None, role: Role, *, backward: bool = False) -> Task | None:
        if feature is None or feature.status != FeatureStatus.IN_PROGRESS:
            return None
        existing = self.store.list_tasks(
            feature_id=feature.id,
            role=role,
            status=[TaskStatus.PENDING, TaskStatus.IN_PROGRESS],
            limit=1,
        )
        if existing:
            return None
        if backward:
            description = f'Address review feedback for feature: {feature.description}'
        else:
            description = f'{role.value} task for feature: {feature.description}'
        return self._new_task(feature.id, role, description, reason='pipeline advanced')

    def _new_task(self, feature_id: str, role: Role, description: str, *, reason: str) -> Task:
        task = self.store.create_task(feature_id=feature_id, role=role, description=description)
        self.store.record_transition(
            entity_type=EntityType.TASK,
            entity_id=task.id,
            from_state=None,
            to_state=TaskStatus.PENDING.value,
            reason=reason,
        )
        self.emit(EventType.TASK_CREATED, task_id=task.id, feature_id=feature_id, role=role.value)
        return task

    def _process_architect_output(self, task: Task, output: dict) -> None:
        feature_id = task.feature_id
        discoveries = [d for d in output.get('discoveries') or [] if isinstance(d, dict)]
        for item in discoveries:
            self.store.add_discovery(
                feature_id=feature_id,
                type=str(item.get('type') or 'pattern'),
                description=_join_text(item.get('title'), item.get('description')),
                impact=str(item.get('impact') or 'medium'),
            )
        decisions = [d for d in output.get('decisions') or [] if isinstance(d, dict)]
        for item in decisions:
            self.store.add_decision(
                feature_id=feature_id,
                decision=str(item.get('decision') or item.get('title') or ''),
                rationale=str(item.get('rationale') or item.get('context') or ''),
                alternatives=_alternatives(item.get('alternatives')),
                consequences=(str(item['consequences']) if item.get('consequences') else None),
            )

        stories = [s for s in output.get('userStories') or [] if isinstance(s, dict)]
        for item in stories:
            story = self.store.add_user_story(
                feature_id=feature_id,
                title=str(item.get('title') or 'Untitled story'),
                description=str(item.get('description') or ''),
                acceptance_criteria=[str(c) for c in item.get('acceptanceCriteria') or []],
                status='ready',
            )
            dev_task = self._new_task(
                feature_id,
                Role.DEVELOPER,
                f'Implement user story: {story.title}',
                reason=f'user story {story.id}',
            )
            self.store.link_task_user_story(dev_task.id, story.id)
        if not stories:
            feature = self.store.get_feature(feature_id)
            description = feature.description if feature is not None else task.description
            self._new_task(feature_id, Role.DEVELOPER, f'Implement solution for: {description}', reason='architecture ready')

        _log.info(
            'architect_output_processed task_id=%s discoveries=%d decisions=%d stories=%d',
            task.id, len(discoveries), len(decisions), len(stories),
        )
        self.emit(
            EventType.ARCHITECT_OUTPUT_PROCESSED,
            task_id=task.id,
            feature_id=feature_id,
            discoveries=len(discoveries),
            decisions=len(decisions),
            user_stories=len(stories),
        )

    def _handle_failure(self, task: Task, error: str, *, failure_kind: str | None = None) -> None:
        task = self._move_task(task, TaskStatus.FAILED, reason=error, error=error, completed_at=utc_now())
        _log.warning('task_failed task_id=%s attempts=%d error=%s', task.id, task.attempts, error)
        self.emit(EventType.TASK_FAILED, task_id=task.id, feature_id=task.feature_id, error=error, attempts=task.attempts)

        feature = self.store.get_feature(task.feature_id)
        if feature is not None and feature.is_system:
            _log.warning('self_healing_task_failed task_id=%s', task.id)
            return

        if self.config.self_healing_enabled and task.attempts < self.config.max_task_attempts:
            if self._attempt_recovery(task, error, failure_kind):
                return
        self._block_feature(feature, task, error)

    def _attempt_recovery(self, task: Task, error: str, failure_kind: str | None) -> bool:
        try:
            analysis = self.reasoner.analyze_failure(task, error, failure_kind=failure_kind)
        except Exception as exc:
            _log.exception('failure_analysis_failed task_id=%s', task.id)
            self.store.add_audit(
                action='self-healing-failed',
                entity_type=EntityType.TASK.value,
                entity_id=task.id,
                actor=Actor.AI.value,
                details={'error': str(exc)},
            )
            self.emit(EventType.SELF_HEALING_FAILED, task_id=task.id, error=str(exc))
            return False

        if not analysis.retry:
            self.store.add_audit(
                action='self-healing-declined',
                entity_type=EntityType.TASK.value,
                entity_id=task.id,
                actor=Actor.AI.value,
                details={'reason': analysis.reason},
            )
            return False

        changes: dict[str, Any] = {}
        if analysis.modified_prompt:
            changes['description'] = analysis.modified_prompt
        self._move_task(
            task,
            TaskStatus.PENDING,
            reason=f'self-healing retry: {analysis.reason}'.strip(),
            actor=Actor.AI,
            **changes,
        )
        if analysis.additional_context:
            self.store.add_context(
                feature_id=task.feature_id,
                type=ContextType.IMPLEMENTATION,
                content=analysis.additional_context,
                author='self-healing',
            )
        self.store.add_audit(
            action='self-healing-retry',
            entity_type=EntityType.TASK.value,
            entity_id=task.id,
            actor=Actor.AI.value,
            details={'reason': analysis.reason, 'prompt_modified': bool(analysis.modified_prompt)},
        )
        _log.info('task_retry_scheduled task_id=%s attempts=%d', task.id, task.attempts)
        self.emit(EventType.TASK_RETRY_SCHEDULED, task_id=task.id, feature_id=task.feature_id, reason=analysis.reason)
        return True

    def _block_feature(self, feature: Feature | None, task: Task, error: str) -> None:
        if feature is not None and feature.status in {FeatureStatus.PENDING, FeatureStatus.IN_PROGRESS}:
            self._move_feature(feature, FeatureStatus.FAILED, reason=f'Task #{task.id} failed: {error}')
            _log.error('feature_failed feature_id=%s task_id=%s', feature.id, task.id)
            self.emit(EventType.FEATURE_FAILED, feature_id=feature.id, task_id=task.id, error=error)
        self._safe_self_healing_task(
            'task-failure',
            f'Unblock feature {task.feature_id}: {task.role.value} task #{task.id} failed '
            f'after {task.attempts} attempts with error: {error}',
        )

    # Self-healing

    def _safe_self_healing_task(self, kind: str, description: str) -> Task | None:
        try:
            return self.create_self_healing_task(kind, description)
        except Exception:
            _log.exception('self_healing_task_creation_failed kind=%s', kind)
            return None

    def create_self_healing_task(self, kind: str, description: str) -> Task:
        feature = self._self_healing_feature()
        task = self._new_task(feature.id, Role.ARCHITECT, f'[{kind}] {description}', reason='self-healing')
        self.store.add_audit(
            action='self-healing-task-created',
            entity_type=EntityType.TASK.value,
            entity_id=task.id,
            actor=Actor.SYSTEM.value,
            details={'kind': kind},
        )
        self.emit(EventType.SELF_HEALING_TASK_CREATED, task_id=task.id, kind=kind)
        return task

    def _self_healing_feature(self) -> Feature:
        active = {FeatureStatus.PENDING, FeatureStatus.IN_PROGRESS}
        with self._self_healing_lock:
            if self._self_healing_feature_id is not None:
                cached = self.store.get_feature(self._self_healing_feature_id)
                if cached is not None and cached.status in active:
                    return cached
            for status in (FeatureStatus.IN_PROGRESS, FeatureStatus.PENDING):
                for feature in self.store.list_features(status=status):
                    if feature.is_system and feature.metadata.get('kind') == 'self-healing':
                        self._self_healing_feature_id = feature.id
                        return feature
            feature = self.store.create_feature(
                description=SELF_HEALING_DESCRIPTION,
                priority=Priority.HIGH,
                metadata={'system': True, 'kind': 'self-healing'},
            )
            self.store.record_transition(
                entity_type=EntityType.FEATURE,
                entity_id=feature.id,
                from_state=None,
                to_state=feature.status.value,
                reason='self-healing feature created',
            )
            self._self_healing_feature_id = feature.id
            return feature

    # Deadlocks

    def _work_item(self, task: Task) -> WorkItem:
        return WorkItem(
            id=task.id,
            title=task.description[:80],
            body=task.description,
            state='blocked' if self._is_gated(task) else 'pending',
            priority='critical' if task.id in self._boosted else 'normal',
        )

    def _check_deadlocks(self) -> None:
        pending = self.store.list_pending_tasks(limit=self.config.pending_scan_limit)
        items = [self._work_item(task) for task in pending]
        pending_ids = {item.id for item in items}
        self._seen_deadlocks = {s for s in self._seen_deadlocks if pending_ids.issuperset(s[1])}
        fresh = [d for d in self.deadlocks.detect(items) if d.signature not in self._seen_deadlocks]
        if not fresh:
            return
        self._seen_deadlocks.update(d.signature for d in fresh)
        for deadlock in fresh:
            self.emit(EventType.DEADLOCK_DETECTED, deadlock_type=deadlock.type, items=list(deadlock.item_ids))
        for outcome in self.deadlocks.resolve(fresh):
            self.emit(
                EventType.DEADLOCK_RESOLVED,
                deadlock_type=outcome.deadlock.type,
                action=outcome.resolution.action,
                target=outcome.resolution.target_id,
                resolved=outcome.resolved,
                reason=outcome.resolution.reason,
            )

    def _is_gated(self, task: Task) -> bool:
        if not self.config.deadlock_detection or task.id in self._unblocked:
            return False
        for dep in self.extractor.dependencies(WorkItem(id=task.id, title='', body=task.description)):
            if dep == task.id:
                continue
            upstream = self.store.get_task(dep)
            if upstream is not None and upstream.status != TaskStatus.COMPLETE:
                return True
        return False

    def _prioritize_item(self, item: WorkItem) -> None:
        with self._lock:
            self._boosted.add(item.id)

    def _unblock_item(self, item: WorkItem) -> None:
        with self._lock:
            self._unblocked.add(item.id)

    # State changes

    def _move_task(
        self,
        task: Task,
        status: TaskStatus,
        *,
        reason: str | None = None,
        actor: Actor = Actor.SYSTEM,
        **changes: Any,
    ) -> Task:
        if not can_transition(task.status, status):
            raise ValueError(f'invalid task transition {task.status.value} -> {status.value} task_id={task.id}')
        updated = self.store.update_task(task.id, status=status, **changes)
        self.store.record_transition(
            entity_type=EntityType.TASK,
            entity_id=task.id,
            from_state=task.status.value,
            to_state=status.value,
            reason=reason,
            actor=actor,
        )
        return updated

    def _move_feature(self, feature: Feature, status: FeatureStatus, *, reason: str | None = None) -> Feature:
        if not can_transition(feature.status, status):
            raise ValueError(f'invalid feature transition {feature.status.value} -> {status.value} feature_id={feature.id}')
        updated = self.store.update_feature(feature.id, status=status)
        self.store.record_transition(
            entity_type=EntityType.FEATURE,
            entity_id=feature.id,
            from_state=feature.status.value,
            to_state=status.value,
            reason=reason,
        )
        return updated

    # Reporting

    def running_tasks(self) -> list[RunningTask]:
        with self._lock:
            return list(self._running.values())

    def get_metrics(self) -> dict[str, Any]:
        features = Counter(f.status.value for f in self.store.list_features())
        tasks = Counter(t.status.value for t in self.store.list_tasks())
        with self._lock:
            running_by_role = Counter(entry.role.value for entry in self._running.values())
            running_total = len(self._running)
        return {
            'features': {status.value: features.get(status.value, 0) for status in FeatureStatus},
            'tasks': {status.value: tasks.get(status.value, 0) for status in TaskStatus},
            'orchestrator': {
                'running': self._started,
                'paused': self._paused,
                'development_mode': self._development_mode,
                'running_tasks': running_total,
                'running_by_role': {role.value: running_by_role.get(role.value, 0) for role in Role},
                'max_concurrent': self.config.max_concurrent_tasks,
            },
            'deadlocks': {
                'detected': self.deadlocks.counters.detected,
                'resolved': self.deadlocks.counters.resolved,
            },
        }

    def get_progress(self) -> dict[str, Any]:
        now = self._clock()
        active = [
            {
                'task_id': entry.task_id,
                'role': entry.role.value,
                'feature_id': entry.feature_id,
                'elapsed_seconds': round(now - entry.started, 3),
            }
            for entry in self.running_tasks()
        ]
        tasks = self.store.list_tasks()
        completed = [t for t in tasks if t.status == TaskStatus.COMPLETE]
        durations = [
            (t.completed_at - t.started_at).total_seconds()
            for t in completed
            if t.started_at is not None and t.completed_at is not None
        ]
        return {
            'active_tasks': active,
            'pending': sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            'completed': len(completed),
            'failed': sum(1 for t in tasks if t.status == TaskStatus.FAILED),
            'average_completion_seconds': (sum(durations) / len(durations)) if durations else None,
        }

    def _config_details(self) -> dict[str, Any]:
        return {
            'check_interval_seconds': self.config.check_interval_seconds,
            'max_concurrent_tasks': self.config.max_concurrent_tasks,
            'max_concurrent_by_role': {role.value: cap for role, cap in self.config.max_concurrent_by_role.items()},
            'task_timeout_seconds': self.config.task_timeout_seconds,
            'max_task_attempts': self.config.max_task_attempts,
            'self_healing_enabled': self.config.self_healing_enabled,
            'pipeline': self.pipeline.name,
        }


def _decode_content(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


def _join_text(title: Any, description: Any) -> str:
    parts = [str(v).strip() for v in (title, description) if v is not None and str(v).strip()]
    return ': '.join(parts)


def _alternatives(value: Any) -> list[str]:
    if isinstance(value, dict):
        return [f'{k}: {v}' for k, v in value.items()]
    if isinstance(value, list):
        return [str(v) for v in value]
    if value:
        return [str(value)]
    return []
