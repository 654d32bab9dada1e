from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from threading import Lock
from typing import TYPE_CHECKING, Callable, Protocol

if TYPE_CHECKING:
    from devpipe.reasoning import ReasoningPort

_log = logging.getLogger(__name__)

DEADLOCK_CIRCULAR = 'circular'
DEADLOCK_RESOURCE = 'resource'
DEADLOCK_DEPENDENCY = 'dependency'

ACTION_PRIORITIZE = 'prioritize'
ACTION_UNBLOCK = 'unblock'
ACTION_WAIT = 'wait'
RESOLUTION_ACTIONS = frozenset({ACTION_PRIORITIZE, ACTION_UNBLOCK, ACTION_WAIT})


@dataclass(frozen=True)
class WorkItem:
    id: int
    title: str
    body: str = ''
    state: str = 'pending'
    assignee: str | None = None
    priority: str = 'normal'


@dataclass(frozen=True)
class Deadlock:
    type: str
    items: tuple[WorkItem, ...]
    description: str

    @property
    def item_ids(self) -> tuple[int, ...]:
        return tuple(item.id for item in self.items)

    @property
    def signature(self) -> tuple[str, tuple[int, ...]]:
        return (self.type, tuple(sorted(self.item_ids)))


@dataclass(frozen=True)
class DeadlockResolution:
    action: str
    target_id: int | None = None
    reason: str = ''


@dataclass(frozen=True)
class ResolutionOutcome:
    deadlock: Deadlock
    resolution: DeadlockResolution
    resolved: bool


class DependencyExtractor(Protocol):
    def dependencies(self, item: WorkItem) -> list[int]:
        ...

    def resources(self, item: WorkItem) -> list[str]:
        ...


class RegexDependencyExtractor:
    """Reads ``depends on #N`` references and file mentions from free text."""

    dependency_re = re.compile(r'depends on #(\d+)', re.IGNORECASE)
    file_re = re.compile(r'\b([\w-]+\.[A-Za-z]\w*)\b')

    def dependencies(self, item: WorkItem) -> list[int]:
        out: list[int] = []
        for match in self.dependency_re.finditer(item.body or ''):
            dep = int(match.group(1))
            if dep not in out:
                out.append(dep)
        return out

    def resources(self, item: WorkItem) -> list[str]:
        out: list[str] = []
        if item.assignee:
            out.append(f'developer:{item.assignee}')
        for match in self.file_re.finditer(item.body or ''):
            token = f'file:{match.group(1)}'
            if token not in out:
                out.append(token)
        return out


def find_circular_dependencies(items: list[WorkItem], extractor: DependencyExtractor) -> list[Deadlock]:
    by_id = {item.id: item for item in items}
    graph = {item.id: extractor.dependencies(item) for item in items}
    visited: set[int] = set()
    found: list[Deadlock] = []

    def visit(node: int, stack: list[int]) -> list[int] | None:
        visited.add(node)
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in visited:
                cycle = visit(dep, stack)
                if cycle:
                    return cycle
            elif dep in stack:
                return stack[stack.index(dep):]
        stack.pop()
        return None

    for item in items:
        if item.id in visited:
            continue
        cycle = visit(item.id, [])
        if not cycle:
            continue
        members = tuple(by_id[node] for node in cycle if node in by_id)
        found.append(
            Deadlock(
                type=DEADLOCK_CIRCULAR,
                items=members,
                description='Circular dependency detected: ' + ' -> '.join(f'#{node}' for node in cycle),
            )
        )
    return found


def find_resource_conflicts(items: list[WorkItem], extractor: DependencyExtractor) -> list[Deadlock]:
    claims: dict[str, list[WorkItem]] = {}
    for item in items:
        for resource in extractor.resources(item):
            claims.setdefault(resource, []).append(item)
    found: list[Deadlock] = []
    for resource, claimants in claims.items():
        if len(claimants) < 2:
            continue
        found.append(
            Deadlock(
                type=DEADLOCK_RESOURCE,
                items=tuple(claimants),
                description=f'Resource conflict on "{resource}" between items: '
                + ', '.join(f'#{item.id}' for item in claimants),
            )
        )
    return found


def find_dependency_blocks(items: list[WorkItem], extractor: DependencyExtractor) -> list[Deadlock]:
    by_id = {item.id: item for item in items}
    found: list[Deadlock] = []
    for item in items:
        if item.state != 'blocked':
            continue
        blockers = [by_id[dep] for dep in extractor.dependencies(item) if dep in by_id and dep != item.id]
        if not blockers:
            continue
        found.append(
            Deadlock(
                type=DEADLOCK_DEPENDENCY,
                items=(item, *blockers),
                description=f'Item #{item.id} is blocked by: ' + ', '.join(f'#{b.id}' for b in blockers),
            )
        )
    return found


def detect_deadlocks(items: list[WorkItem], extractor: DependencyExtractor | None = None) -> list[Deadlock]:
    extractor = extractor or RegexDependencyExtractor()
    return [
        *find_circular_dependencies(items, extractor),
        *find_resource_conflicts(items, extractor),
        *find_dependency_blocks(items, extractor),
    ]


@dataclass
class DeadlockCounters:
    detected: int = 0
    resolved: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


class DeadlockResolver:
    """Asks the reasoner for an action per deadlock and applies it."""

    def __init__(
        self,
        *,
        reasoner: ReasoningPort,
        prioritize: Callable[[WorkItem], None],
        unblock: Callable[[WorkItem], None],
        extractor: DependencyExtractor | None = None,
    ):
        self.reasoner = reasoner
        self.prioritize = prioritize
        self.unblock = unblock
        self.extractor = extractor or RegexDependencyExtractor()
        self.counters = DeadlockCounters()
        self._lock = Lock()

    def detect(self, items: list[WorkItem]) -> list[Deadlock]:
        return detect_deadlocks(items, self.extractor)

    def resolve(self, deadlocks: list[Deadlock]) -> list[ResolutionOutcome]:
        outcomes: list[ResolutionOutcome] = []
        for deadlock in deadlocks:
            with self._lock:
                self.counters.detected += 1
                self.counters.by_type[deadlock.type] = self.counters.by_type.get(deadlock.type, 0) + 1
            _log.warning('deadlock_detected type=%s items=%s', deadlock.type, list(deadlock.item_ids))
            resolution = self.reasoner.resolve_deadlock(deadlock)
            resolved = self._apply(deadlock, resolution)
            if resolved:
                with self._lock:
                    self.counters.resolved += 1
            _log.info(
                'deadlock_resolution type=%s action=%s target=%s resolved=%s reason=%s',
                deadlock.type, resolution.action, resolution.target_id, resolved, resolution.reason,
            )
            outcomes.append(ResolutionOutcome(deadlock=deadlock, resolution=resolution, resolved=resolved))
        return outcomes

    def _apply(self, deadlock: Deadlock, resolution: DeadlockResolution) -> bool:
        if resolution.action not in {ACTION_PRIORITIZE, ACTION_UNBLOCK}:
            return False
        target = next((item for item in deadlock.items if item.id == resolution.target_id), None)
        if target is None:
            _log.warning('deadlock_target_missing action=%s target=%s', resolution.action, resolution.target_id)
            return False
        if resolution.action == ACTION_PRIORITIZE:
            self.prioritize(target)
        else:
            self.unblock(target)
        return True
