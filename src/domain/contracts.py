from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SpanStatus(str, Enum):
    OK = "OK"
    ERROR = "ERROR"
    UNSPECIFIED = "UNSPECIFIED"


@dataclass
class CanonicalSpan:
    """Normalized span. Treated as read-only once built.

    ``child_spans`` is owned by the hierarchy builder, which fills it on fresh
    copies and never on the spans it is given.
    """

    span_id: str
    display_name: str
    start_time: str = ""
    end_time: str = ""
    kind: str = "UNSPECIFIED"
    status: SpanStatus = SpanStatus.UNSPECIFIED
    parent_span_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    child_spans: list[CanonicalSpan] = field(default_factory=list)


@dataclass
class TraceStructure:
    trace_id: str
    project_id: str
    root_spans: list[CanonicalSpan] = field(default_factory=list)
    all_spans: list[CanonicalSpan] = field(default_factory=list)
