from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable

from domain.contracts import CanonicalSpan, SpanStatus, TraceStructure
from domain.span_normalizer import UNKNOWN_SPAN, UNSPECIFIED_KIND
from domain.timestamps import duration_ms, parse_timestamp
from domain.trace_hierarchy import count_descendants
from infrastructure.config import RenderSettings

IMPORTANT_ATTRIBUTES = (
    "/http/method",
    "/http/url",
    "/http/status_code",
    "/http/host",
    "/http/path",
    "/http/route",
    "/http/user_agent",
    "http.method",
    "http.url",
    "http.status_code",
    "http.host",
    "http.path",
    "http.route",
    "http.user_agent",
    "/error/message",
    "error.message",
    "error",
    "/db/system",
    "/db/name",
    "/db/operation",
    "/db/statement",
    "db.system",
    "db.name",
    "db.operation",
    "db.statement",
    "service.name",
    "span.kind",
    "component",
    "/component",
    "g.co/agent",
    "g.co/gae/app/module",
    "g.co/gae/app/version",
    "g.co/gce/instance_id",
)
_IMPORTANT_ATTRIBUTE_SET = frozenset(IMPORTANT_ATTRIBUTES)
_ERROR_MESSAGE_KEYS = ("/error/message", "error.message", "error")
_STATUS_MARKERS = {
    SpanStatus.ERROR: "❌ ",
    SpanStatus.OK: "✅ ",
    SpanStatus.UNSPECIFIED: "⚪ ",
}
_UNKNOWN = "unknown"


def format_duration(ms: int, settings: RenderSettings | None = None) -> str:
    settings = settings or RenderSettings()
    if ms < settings.seconds_threshold_ms:
        return f"{ms}ms"
    if ms < settings.minutes_threshold_ms:
        return f"{ms / 1000:.2f}s"
    minutes, remainder = divmod(ms, 60000)
    return f"{minutes}m {remainder / 1000:.2f}s"


def calculate_duration(start_time: Any, end_time: Any, settings: RenderSettings | None = None) -> str:
    ms = duration_ms(start_time, end_time)
    if ms is None:
        return _UNKNOWN
    return format_duration(ms, settings)


def format_trace_data(trace: TraceStructure, settings: RenderSettings | None = None) -> str:
    settings = settings or RenderSettings()
    lines = [
        "## Trace Details",
        "",
        f"- **Trace ID**: {trace.trace_id}",
        f"- **Project ID**: {trace.project_id}",
        f"- **Total Spans**: {len(trace.all_spans)}",
    ]
    logs_uri = settings.logs_uri(trace.project_id, trace.trace_id)
    if logs_uri:
        lines.append(f"- **Associated Logs**: [View logs for this trace]({logs_uri})")
    lines.append("")

    kinds = Counter(span.kind for span in trace.all_spans if span.kind and span.kind != UNSPECIFIED_KIND)
    if kinds:
        lines.append("- **Span Types**:")
        for kind, count in kinds.items():
            lines.append(f"  - {kind}: {count}")
        lines.append("")

    lines.append("## Trace Hierarchy")
    lines.append("")
    lines.extend(_hierarchy_lines(trace.root_spans, settings))

    failed = [span for span in trace.all_spans if span.status == SpanStatus.ERROR]
    if failed:
        lines.append("")
        lines.append(f"## Failed Spans ({len(failed)})")
        lines.append("")
        for span in failed:
            lines.append(f"- **{span.display_name}** ({span.span_id})")
            lines.append(f"  - Start: {_iso_or_unknown(span.start_time)}")
            lines.append(f"  - End: {_iso_or_unknown(span.end_time)}")
            lines.append(f"  - Duration: {calculate_duration(span.start_time, span.end_time, settings)}")
            error_message = _error_message(span)
            if error_message:
                lines.append(f"  - Error: {error_message}")
            lines.append("")
    return "\n".join(lines) + "\n"


def format_raw_span_summary(raw_spans: Iterable[Any]) -> str:
    """Plain listing of raw spans, used when the hierarchy cannot be rendered."""
    lines = ["## Raw Span Summary", ""]
    for raw in raw_spans:
        span = raw if isinstance(raw, dict) else {}
        lines.append(f"- **Span ID**: {span.get('spanId') or 'Unknown'}")
        lines.append(f"  - Name: {span.get('name') or 'Unknown'}")
        lines.append(f"  - Parent: {span.get('parentSpanId') or 'None'}")
        ms = duration_ms(span.get("startTime"), span.get("endTime"))
        if ms is not None:
            lines.append(f"  - Duration: {ms}ms")
        labels = span.get("labels")
        if isinstance(labels, dict):
            lines.append(f"  - Labels: {len(labels)} total")
            for key in ("/http/method", "/http/path", "/http/status_code", "/component", "g.co/agent"):
                if labels.get(key):
                    lines.append(f"    - {key}: {labels[key]}")
        lines.append("")
    return "\n".join(lines) + "\n"


def _hierarchy_lines(roots: list[CanonicalSpan], settings: RenderSettings) -> list[str]:
    lines: list[str] = []
    stack: list[tuple[CanonicalSpan, int]] = [(root, 0) for root in reversed(roots)]
    seen: set[int] = set()
    while stack:
        span, depth = stack.pop()
        if id(span) in seen:
            continue
        seen.add(id(span))
        lines.extend(_span_lines(span, depth, settings))
        if not span.child_spans:
            continue
        if depth + 1 >= settings.max_depth:
            hidden = count_descendants(span)
            lines.append(f"{'  ' * (depth + 1)}- ... {hidden} nested spans not shown")
            continue
        for child in reversed(span.child_spans):
            stack.append((child, depth + 1))
    return lines


def _span_lines(span: CanonicalSpan, depth: int, settings: RenderSettings) -> list[str]:
    indent = "  " * depth
    marker = _STATUS_MARKERS.get(span.status, _STATUS_MARKERS[SpanStatus.UNSPECIFIED])
    lines = [
        f"{indent}- {marker}**{_display_text(span)}**",
        f"{indent}  - Span ID: {span.span_id}",
    ]

    if span.start_time and span.end_time:
        lines.append(f"{indent}  - Duration: {calculate_duration(span.start_time, span.end_time, settings)}")
        start = parse_timestamp(span.start_time)
        end = parse_timestamp(span.end_time)
        if start is not None and end is not None:
            lines.append(f"{indent}  - Start: {_readable(start)}")
            lines.append(f"{indent}  - End: {_readable(end)}")

    if span.kind and span.kind != UNSPECIFIED_KIND:
        lines.append(f"{indent}  - Kind: {span.kind}")

    if span.status == SpanStatus.ERROR:
        lines.append(f"{indent}  - Status: ERROR")
        error_message = _error_message(span)
        if error_message:
            lines.append(f"{indent}  - Error: {error_message}")

    important = [(k, v) for k, v in span.attributes.items() if k in _IMPORTANT_ATTRIBUTE_SET]
    others = [(k, v) for k, v in span.attributes.items() if k not in _IMPORTANT_ATTRIBUTE_SET]
    if important or others:
        lines.append(f"{indent}  - Attributes:")
        for key, value in important:
            lines.append(f"{indent}    - {key}: {value}")
        for key, value in others[: settings.max_other_attributes]:
            lines.append(f"{indent}    - {key}: {value}")
        remaining = len(others) - settings.max_other_attributes
        if remaining > 0:
            lines.append(f"{indent}    - ... {remaining} more attributes")
    return lines


def _error_message(span: CanonicalSpan) -> str | None:
    return next((span.attributes[k] for k in _ERROR_MESSAGE_KEYS if span.attributes.get(k)), None)


def _display_text(span: CanonicalSpan) -> str:
    if UNKNOWN_SPAN not in span.display_name:
        return span.display_name
    attrs = span.attributes
    context: list[str] = []
    for key in ("/http/method", "/http/path", "/http/url"):
        if attrs.get(key):
            context.append(attrs[key])
    if attrs.get("/http/status_code"):
        context.append(f"Status: {attrs['/http/status_code']}")
    if attrs.get("/component"):
        context.append(f"Component: {attrs['/component']}")
    if attrs.get("service.name"):
        context.append(f"Service: {attrs['service.name']}")
    if attrs.get("/db/system"):
        context.append(f"DB: {attrs['/db/system']}")
    if attrs.get("/db/operation"):
        context.append(attrs["/db/operation"])
    if attrs.get("g.co/agent"):
        context.append(f"Agent: {attrs['g.co/agent']}")
    if not context:
        return span.display_name
    return f"{span.display_name} ({' | '.join(context)})"


def _readable(value: datetime) -> str:
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%d %H:%M:%S.") + f"{utc.microsecond // 1000:03d}"


def _iso_or_unknown(value: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return _UNKNOWN
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
