from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Iterator, Sequence

from .contracts import CanonicalSpan, TraceStructure
from .span_normalizer import normalize_span
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)


def build_trace_hierarchy(project_id: str, trace_id: str, raw_spans: Iterable[Any]) -> TraceStructure:
    raw_list = list(raw_spans)
    logger.debug("code=TRACE_HIERARCHY_BUILD trace_id=%s spans=%s", trace_id, len(raw_list))
    return link_spans(project_id, trace_id, [normalize_span(raw) for raw in raw_list])


def link_spans(project_id: str, trace_id: str, spans: Sequence[CanonicalSpan]) -> TraceStructure:
    """Assemble canonical spans into a forest.

    The input spans are left untouched: every node in the result is a fresh
    copy with its own ``child_spans`` list, so linking the same input twice
    gives structurally identical output.

    Spans without a parent id, with a parent id that matches no span, or that
    name themselves as parent become roots. Parent cycles are broken by
    promoting one member of each cycle to a root, so every span is reachable
    from exactly one root and no span is its own ancestor.
    """
    nodes = [replace(span, child_spans=[]) for span in spans]

    index: dict[str, int] = {}
    for pos, node in enumerate(nodes):
        index[node.span_id] = pos

    parent_of: list[int | None] = [None] * len(nodes)
    children: list[list[int]] = [[] for _ in nodes]
    roots: list[int] = []
    for pos, node in enumerate(nodes):
        if not node.parent_span_id:
            roots.append(pos)
            continue
        parent_pos = index.get(node.parent_span_id)
        if parent_pos is None:
            logger.debug(
                "code=TRACE_PARENT_MISSING trace_id=%s span_id=%s parent_span_id=%s",
                trace_id,
                node.span_id,
                node.parent_span_id,
            )
            roots.append(pos)
        elif parent_pos == pos:
            logger.warning("code=TRACE_PARENT_SELF trace_id=%s span_id=%s", trace_id, node.span_id)
            roots.append(pos)
        else:
            parent_of[pos] = parent_pos
            children[parent_pos].append(pos)

    _break_parent_cycles(trace_id, nodes, parent_of, children, roots)

    start_keys = [_start_sort_key(node.start_time) for node in nodes]
    for pos, child_positions in enumerate(children):
        if len(child_positions) > 1:
            child_positions.sort(key=lambda child: start_keys[child])
        nodes[pos].child_spans = [nodes[child] for child in child_positions]

    structure = TraceStructure(
        trace_id=trace_id,
        project_id=project_id,
        root_spans=[nodes[pos] for pos in roots],
        all_spans=nodes,
    )
    logger.debug(
        "code=TRACE_HIERARCHY_BUILT trace_id=%s spans=%s roots=%s",
        trace_id,
        len(structure.all_spans),
        len(structure.root_spans),
    )
    return structure


def walk_spans(roots: Iterable[CanonicalSpan]) -> Iterator[tuple[CanonicalSpan, int]]:
    """Yield ``(span, depth)`` depth-first in display order without recursion."""
    stack: list[tuple[CanonicalSpan, int]] = [(root, 0) for root in reversed(list(roots))]
    seen: set[int] = set()
    while stack:
        span, depth = stack.pop()
        if id(span) in seen:
            continue
        seen.add(id(span))
        yield span, depth
        for child in reversed(span.child_spans):
            stack.append((child, depth + 1))


def count_descendants(span: CanonicalSpan) -> int:
    return sum(1 for _ in walk_spans([span])) - 1


def _break_parent_cycles(
    trace_id: str,
    nodes: list[CanonicalSpan],
    parent_of: list[int | None],
    children: list[list[int]],
    roots: list[int],
) -> None:
    reached = [False] * len(nodes)
    _mark_reached(roots, children, reached)
    for pos in range(len(nodes)):
        if reached[pos]:
            continue
        # an unreached span has an unbroken parent chain that must loop back
        seen: set[int] = set()
        anchor = pos
        while anchor not in seen:
            seen.add(anchor)
            anchor = parent_of[anchor]  # type: ignore[assignment]
        parent_pos = parent_of[anchor]
        children[parent_pos].remove(anchor)  # type: ignore[index]
        parent_of[anchor] = None
        roots.append(anchor)
        _mark_reached([anchor], children, reached)
        logger.warning(
            "code=TRACE_PARENT_CYCLE_BROKEN trace_id=%s span_id=%s parent_span_id=%s",
            trace_id,
            nodes[anchor].span_id,
            nodes[anchor].parent_span_id,
        )


def _mark_reached(starts: Iterable[int], children: list[list[int]], reached: list[bool]) -> None:
    stack = list(starts)
    while stack:
        pos = stack.pop()
        if reached[pos]:
            continue
        reached[pos] = True
        stack.extend(children[pos])


def _start_sort_key(start_time: str) -> tuple[int, datetime | None]:
    parsed = parse_timestamp(start_time)
    # unparseable starts compare equal and keep their input order after the parseable ones
    if parsed is None:
        return (1, None)
    return (0, parsed)
