from __future__ import annotations

import json
import logging
from typing import Any, Callable, Iterator, Mapping

from .contracts import CanonicalSpan, SpanStatus

logger = logging.getLogger(__name__)

UNKNOWN_SPAN = "Unknown Span"
UNSPECIFIED_KIND = "UNSPECIFIED"

_CONSUMED_FIELDS = frozenset(
    {
        "spanId",
        "name",
        "displayName",
        "startTime",
        "endTime",
        "parentSpanId",
        "kind",
        "status",
        "labels",
        "attributes",
        "childSpans",
    }
)
_RAW_VALUE_LIMIT = 100
_DB_STATEMENT_LIMIT = 30
_DESCRIPTIVE_VALUE_LIMIT = 50
_RESERVED_LABEL_PREFIXES = ("/", "g.co/")
_ALTERNATIVE_NAME_FIELDS = ("operationName", "description", "type", "method", "rpcName", "kind")
_ERROR_MESSAGE_KEYS = ("/error/message", "error.message", "error")

HTTP_PATH_KEYS = ("/http/path", "http.path")
HTTP_METHOD_KEYS = ("/http/method", "http.method")
HTTP_URL_KEYS = ("/http/url", "http.url")
HTTP_STATUS_KEYS = ("/http/status_code", "http.status_code")
COMPONENT_KEYS = ("/component", "component")
DB_STATEMENT_KEYS = ("/db/statement", "db.statement")
DB_SYSTEM_KEYS = ("/db/system", "db.system")
SPAN_KIND_KEYS = ("/span/kind", "span.kind")

_PLATFORM_LABELS = (
    ("g.co/agent", "Agent"),
    ("g.co/gae/app/module", "GAE Module"),
    ("g.co/gae/app/version", "GAE Version"),
    ("g.co/gce/instance_id", "GCE Instance"),
)

NameExtractor = Callable[[Mapping[str, Any], Mapping[str, str]], "str | None"]


def normalize_span(raw: Any) -> CanonicalSpan:
    span = _as_record(raw)
    span_id = _text(span.get("spanId"))
    labels = _flatten_labels(span)
    attributes = dict(labels)
    for key, value in _raw_field_attributes(span).items():
        attributes.setdefault(key, value)

    parent_span_id = _text(span.get("parentSpanId")) or None
    canonical = CanonicalSpan(
        span_id=span_id,
        display_name=resolve_display_name(span, labels, span_id),
        start_time=_text(span.get("startTime")),
        end_time=_text(span.get("endTime")),
        kind=resolve_kind(span, labels),
        status=resolve_status(span, labels),
        parent_span_id=parent_span_id,
        attributes=attributes,
    )
    logger.debug(
        "code=SPAN_NORMALIZED span_id=%s parent_span_id=%s name=%r status=%s kind=%s attributes=%s",
        canonical.span_id,
        canonical.parent_span_id,
        canonical.display_name,
        canonical.status.value,
        canonical.kind,
        len(canonical.attributes),
    )
    return canonical


def resolve_display_name(span: Mapping[str, Any], labels: Mapping[str, str], span_id: str = "") -> str:
    name = _first_match(_SPAN_NAME_EXTRACTORS, span, labels)
    if name is not None:
        return f"HTTP {name}" if name.startswith("/") else name
    name = _first_match(_FALLBACK_NAME_EXTRACTORS, span, labels)
    if name is not None:
        return name
    return f"{UNKNOWN_SPAN} (ID: {span_id})" if span_id else UNKNOWN_SPAN


def resolve_status(span: Mapping[str, Any], labels: Mapping[str, str]) -> SpanStatus:
    for extractor in _STATUS_EXTRACTORS:
        status = extractor(span, labels)
        if status is not None:
            return status
    return SpanStatus.UNSPECIFIED


def resolve_kind(span: Mapping[str, Any], labels: Mapping[str, str]) -> str:
    for candidate in (span.get("kind"), span.get("spanKind"), _label(labels, SPAN_KIND_KEYS)):
        text = _text(candidate)
        if text:
            return text
    return UNSPECIFIED_KIND


# --- display name extractors -------------------------------------------------


def _name_field(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    return _non_empty_str(span.get("name"))


def _structured_display_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    display_name = span.get("displayName")
    if isinstance(display_name, dict):
        return _non_empty_str(display_name.get("value"))
    return None


def _plain_display_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    return _non_empty_str(span.get("displayName"))


def _http_path_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    path = _label(labels, HTTP_PATH_KEYS)
    if path is None:
        return None
    method = _label(labels, HTTP_METHOD_KEYS) or ""
    return f"{method} {path}".strip()


def _http_url_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    url = _label(labels, HTTP_URL_KEYS)
    return f"HTTP {url}" if url else None


def _http_status_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    code = _label(labels, HTTP_STATUS_KEYS)
    return f"HTTP Status: {code}" if code else None


def _component_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    component = _label(labels, COMPONENT_KEYS)
    return f"Component: {component}" if component else None


def _db_statement_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    statement = _label(labels, DB_STATEMENT_KEYS)
    if not statement:
        return None
    system = _label(labels, DB_SYSTEM_KEYS) or "DB"
    return f"{system}: {statement[:_DB_STATEMENT_LIMIT]}..."


def _platform_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    for key, prefix in _PLATFORM_LABELS:
        value = labels.get(key)
        if value:
            return f"{prefix}: {value}"
    return None


def _descriptive_label_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    for key, value in _string_label_values(span):
        if key.startswith(_RESERVED_LABEL_PREFIXES):
            continue
        if len(value) < _DESCRIPTIVE_VALUE_LIMIT:
            return f"{key}: {value}"
    return None


def _string_label_values(span: Mapping[str, Any]) -> Iterator[tuple[str, str]]:
    """Label entries whose source value is text, in flattening order."""
    seen: set[str] = set()
    for key, value in _as_record(span.get("labels")).items():
        if value is None:
            continue
        seen.add(str(key))
        if isinstance(value, str):
            yield str(key), value
    attribute_map = _as_record(_as_record(span.get("attributes")).get("attributeMap"))
    for key, value in attribute_map.items():
        if value is None or str(key) in seen:
            continue
        seen.add(str(key))
        typed = value if isinstance(value, str) else _as_record(value).get("stringValue")
        if isinstance(typed, dict):
            typed = typed.get("value")
        if isinstance(typed, str):
            yield str(key), typed


def _operation_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    name = _non_empty_str(_as_record(span.get("operation")).get("name"))
    return f"Operation: {name}" if name else None


def _alternative_field_name(span: Mapping[str, Any], labels: Mapping[str, str]) -> str | None:
    for field_name in _ALTERNATIVE_NAME_FIELDS:
        value = _non_empty_str(span.get(field_name))
        if value:
            return f"{field_name}: {value}"
    return None


_SPAN_NAME_EXTRACTORS: tuple[NameExtractor, ...] = (
    _name_field,
    _structured_display_name,
    _plain_display_name,
)

_FALLBACK_NAME_EXTRACTORS: tuple[NameExtractor, ...] = (
    _http_path_name,
    _http_url_name,
    _http_status_name,
    _component_name,
    _db_statement_name,
    _platform_name,
    _descriptive_label_name,
    _operation_name,
    _alternative_field_name,
)


# --- status extractors -------------------------------------------------------


def _status_code(span: Mapping[str, Any], labels: Mapping[str, str]) -> SpanStatus | None:
    code = _as_int(_as_record(span.get("status")).get("code"))
    if code is None:
        return None
    if code == 0:
        return SpanStatus.OK
    if code > 0:
        return SpanStatus.ERROR
    return None


def _error_label(span: Mapping[str, Any], labels: Mapping[str, str]) -> SpanStatus | None:
    return SpanStatus.ERROR if _label(labels, _ERROR_MESSAGE_KEYS) else None


def _http_status_label(span: Mapping[str, Any], labels: Mapping[str, str]) -> SpanStatus | None:
    code = _as_int(_label(labels, HTTP_STATUS_KEYS))
    if code is None:
        return None
    if code >= 400:
        return SpanStatus.ERROR
    if 200 <= code < 400:
        return SpanStatus.OK
    return None


_STATUS_EXTRACTORS: tuple[Callable[[Mapping[str, Any], Mapping[str, str]], SpanStatus | None], ...] = (
    _status_code,
    _error_label,
    _http_status_label,
)


# --- attribute flattening ----------------------------------------------------


def _flatten_labels(span: Mapping[str, Any]) -> dict[str, str]:
    flattened: dict[str, str] = {}
    for key, value in _as_record(span.get("labels")).items():
        if value is not None:
            flattened.setdefault(str(key), _stringify(value))
    attribute_map = _as_record(_as_record(span.get("attributes")).get("attributeMap"))
    for key, value in attribute_map.items():
        if value is not None:
            flattened.setdefault(str(key), _attribute_value_to_text(value))
    return flattened


def _attribute_value_to_text(value: Any) -> str:
    if not isinstance(value, dict):
        return _stringify(value)
    for typed_key in ("stringValue", "intValue", "boolValue"):
        typed = value.get(typed_key)
        if typed is None:
            continue
        if isinstance(typed, dict):
            # truncatable string: {"value": "...", "truncatedByteCount": 0}
            typed = typed.get("value")
            if typed is None:
                continue
        return _stringify(typed)
    return ""


def _raw_field_attributes(span: Mapping[str, Any]) -> dict[str, str]:
    extras: dict[str, str] = {}
    for key, value in span.items():
        if key in _CONSUMED_FIELDS or value is None or isinstance(value, list):
            continue
        if isinstance(value, dict):
            extras[f"raw.{key}"] = _truncated_json(value)
        else:
            extras[f"raw.{key}"] = _stringify(value)
    return extras


def _truncated_json(value: dict[str, Any]) -> str:
    try:
        text = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return "[Complex Object]"
    if len(text) > _RAW_VALUE_LIMIT:
        return text[:_RAW_VALUE_LIMIT] + "..."
    return text


# --- helpers -----------------------------------------------------------------


def _first_match(
    extractors: tuple[NameExtractor, ...], span: Mapping[str, Any], labels: Mapping[str, str]
) -> str | None:
    for extractor in extractors:
        value = extractor(span, labels)
        if value is not None:
            return value
    return None


def _label(labels: Mapping[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = labels.get(key)
        if value:
            return value
    return None


def _as_record(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _non_empty_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return _stringify(value)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
