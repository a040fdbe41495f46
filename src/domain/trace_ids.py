from __future__ import annotations

import re
from typing import Any

_TRACE_ID_PATTERN = re.compile(r"^[a-f0-9]+$", re.IGNORECASE)
_TRACE_RESOURCE_PATTERN = re.compile(r"traces/([a-f0-9]+)$", re.IGNORECASE)
_LOGGING_TRACE_KEY = "logging.googleapis.com/trace"


class InvalidTraceIdError(ValueError):
    """Raised when a trace id is not a hexadecimal string."""


def validate_trace_id(trace_id: Any) -> str:
    text = str(trace_id or "").strip()
    if not _TRACE_ID_PATTERN.match(text):
        raise InvalidTraceIdError(f"E_INVALID_TRACE_ID: trace id should be a hexadecimal string, got {trace_id!r}")
    return text


def extract_trace_id_from_log(entry: Any) -> str | None:
    """Find the trace a log entry belongs to.

    Checks, in order, the ``trace`` resource name, the trace label, and the
    ``traceId`` / trace resource name inside ``jsonPayload``.
    """
    if not isinstance(entry, dict):
        return None
    found = _trace_id_from_resource(entry.get("trace"))
    if found:
        return found
    labels = entry.get("labels")
    if isinstance(labels, dict):
        found = _trace_id_from_resource(labels.get(_LOGGING_TRACE_KEY))
        if found:
            return found
    payload = entry.get("jsonPayload")
    if isinstance(payload, dict):
        trace_id = payload.get("traceId")
        if isinstance(trace_id, str) and trace_id:
            return trace_id
        return _trace_id_from_resource(payload.get(_LOGGING_TRACE_KEY))
    return None


def _trace_id_from_resource(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    match = _TRACE_RESOURCE_PATTERN.search(value)
    return match.group(1) if match else None
