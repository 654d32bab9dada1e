from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from devpipe.domain.models import Role

EdgeCondition = Callable[[Any], bool]


def review_rejected(output: Any) -> bool:
    return isinstance(output, dict) and output.get('approved') is False


@dataclass(frozen=True)
class PipelineEdge:
    source: Role
    target: Role
    condition: EdgeCondition | None = None
    label: str = ''

    def applies(self, output: Any) -> bool:
        return self.condition is None or bool(self.condition(output))


@dataclass(frozen=True)
class PipelineGraph:
    """Role pipeline as an ordered set of edges.

    ``order`` is the forward sequence of roles; an edge whose target sits
    earlier in ``order`` than its source is a backward edge. Conditional
    edges are consulted before unconditional ones.
    """

    name: str
    order: tuple[Role, ...]
    edges: tuple[PipelineEdge, ...] = field(default_factory=tuple)

    @property
    def entry_role(self) -> Role:
        return self.order[0]

    def candidates(self, role: Role, output: Any = None) -> list[Role]:
        matched = [edge for edge in self.edges if edge.source == role and edge.applies(output)]
        matched.sort(key=lambda edge: edge.condition is None)
        seen: list[Role] = []
        for edge in matched:
            if edge.target not in seen:
                seen.append(edge.target)
        return seen

    def is_backward(self, source: Role, target: Role) -> bool:
        return self.order.index(target) < self.order.index(source)


def _forward_edges(order: tuple[Role, ...]) -> tuple[PipelineEdge, ...]:
    return tuple(PipelineEdge(source=a, target=b, label='next') for a, b in zip(order, order[1:]))


DEFAULT_ORDER = (Role.ARCHITECT, Role.DEVELOPER, Role.REVIEWER)


def forward_pipeline() -> PipelineGraph:
    return PipelineGraph(name='forward', order=DEFAULT_ORDER, edges=_forward_edges(DEFAULT_ORDER))


def review_loop_pipeline() -> PipelineGraph:
    edges = _forward_edges(DEFAULT_ORDER) + (
        PipelineEdge(
            source=Role.REVIEWER,
            target=Role.DEVELOPER,
            condition=review_rejected,
            label='review_rejected',
        ),
    )
    return PipelineGraph(name='review_loop', order=DEFAULT_ORDER, edges=edges)


def build_pipeline(name: str) -> PipelineGraph:
    key = str(name or '').strip().lower()
    if key == 'review_loop':
        return review_loop_pipeline()
    if key in {'', 'forward'}:
        return forward_pipeline()
    raise ValueError(f'unknown pipeline: {name}')
