from __future__ import annotations

import json
import logging
from typing import Any

from domain.trace_hierarchy import build_trace_hierarchy
from domain.trace_ids import validate_trace_id
from infrastructure.config import RenderSettings, load_settings
from infrastructure.span_payloads import load_raw_spans
from runtime.trace_renderer import format_raw_span_summary, format_trace_data

logger = logging.getLogger(__name__)


def build_trace_report(
    project_id: str,
    trace_id: str,
    payload: Any,
    settings: RenderSettings | None = None,
) -> str:
    trace_id = validate_trace_id(trace_id)
    settings = settings or load_settings()
    raw_spans = load_raw_spans(payload, trace_id=trace_id)
    if not raw_spans:
        logger.info("code=TRACE_NOT_FOUND project_id=%s trace_id=%s", project_id, trace_id)
        return f"No trace found with ID: {trace_id} in project: {project_id}"

    summary = json.dumps({"traceId": trace_id, "projectId": project_id, "spanCount": len(raw_spans)}, indent=2)
    header = f"```json\n{summary}\n```\n"
    try:
        trace = build_trace_hierarchy(project_id, trace_id, raw_spans)
        body = format_trace_data(trace, settings)
    except Exception as exc:
        logger.exception("code=E_TRACE_HIERARCHY_FAILED project_id=%s trace_id=%s", project_id, trace_id)
        body = f"## Error Building Trace Hierarchy\n\nError: {exc}\n\n" + format_raw_span_summary(raw_spans)
    else:
        logger.info(
            "code=TRACE_REPORT_BUILT project_id=%s trace_id=%s spans=%s roots=%s",
            project_id,
            trace_id,
            len(trace.all_spans),
            len(trace.root_spans),
        )
    return header + body
