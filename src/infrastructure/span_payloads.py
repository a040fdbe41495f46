from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from google.protobuf.json_format import MessageToDict
from google.protobuf.message import DecodeError
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import ExportTraceServiceRequest

logger = logging.getLogger(__name__)

_HEX_ID_PATTERN = re.compile(r"^[0-9a-fA-F]+$")
_OTLP_SPAN_KINDS = {
    0: None,
    1: "INTERNAL",
    2: "SERVER",
    3: "CLIENT",
    4: "PRODUCER",
    5: "CONSUMER",
}
_OTLP_STATUS_CODES = {
    "STATUS_CODE_UNSET": 0,
    "STATUS_CODE_OK": 1,
    "STATUS_CODE_ERROR": 2,
}
# OTLP/JSON AnyValue members, camelCase and proto field names
_OTLP_SCALAR_VALUES: tuple[tuple[tuple[str, str], Callable[[Any], Any]], ...] = (
    (("stringValue", "string_value"), str),
    (("intValue", "int_value"), int),
    (("doubleValue", "double_value"), float),
    (("boolValue", "bool_value"), bool),
)


class PayloadDecodeError(ValueError):
    """Raised when a trace export body cannot be decoded."""


def _as_record(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_record_array(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _attr_value_to_any(value: dict[str, Any] | None) -> Any:
    if not value:
        return None
    for keys, convert in _OTLP_SCALAR_VALUES:
        for key in keys:
            if key in value:
                try:
                    return convert(value[key])
                except (TypeError, ValueError):
                    return str(value[key])
    array = _as_record(value.get("arrayValue") or value.get("array_value"))
    if array:
        return [_attr_value_to_any(_as_record(item)) for item in _as_record_array(array.get("values"))]
    return value


def _attr_value_to_label(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def _attributes_to_labels(attributes: Any, into: dict[str, str]) -> None:
    for attr in _as_record_array(attributes):
        key = str(attr.get("key") or "")
        if not key:
            continue
        label = _attr_value_to_label(_attr_value_to_any(_as_record(attr.get("value"))))
        if label is not None:
            into[key] = label


def _iso_from_nano(raw: Any) -> str | None:
    if raw is None:
        return None
    try:
        n = int(str(raw))
    except ValueError:
        return None
    if n <= 0:
        return None
    seconds, nanos = divmod(n, 1_000_000_000)
    try:
        stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return stamp.replace(microsecond=nanos // 1000).isoformat()


def _hex_id(raw: Any) -> str:
    text = str(raw or "").strip()
    if not text:
        return ""
    if _HEX_ID_PATTERN.match(text) and len(text) in (16, 32):
        return text.lower()
    # protobuf JSON mapping renders bytes ids as base64
    try:
        return base64.b64decode(text, validate=True).hex()
    except (binascii.Error, ValueError):
        return text


def _otlp_kind(raw: Any) -> str | None:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return _OTLP_SPAN_KINDS.get(raw)
    text = str(raw or "").strip().upper()
    if not text or text == "SPAN_KIND_UNSPECIFIED":
        return None
    return text.removeprefix("SPAN_KIND_")


def _otlp_status(raw: Any) -> dict[str, Any] | None:
    status = _as_record(raw)
    code = status.get("code")
    if isinstance(code, str):
        code = _OTLP_STATUS_CODES.get(code.strip().upper(), 0)
    if code == 1:
        return {"code": 0}
    if code == 2:
        out: dict[str, Any] = {"code": 2}
        if status.get("message"):
            out["message"] = str(status["message"])
        return out
    return None


def spans_from_otlp_payload(payload: dict[str, Any], trace_id: str | None = None) -> list[dict[str, Any]]:
    """Flatten an OTLP trace export into raw spans shaped like the trace API.

    Resource attributes and span attributes are merged into ``labels``, span
    attributes taking precedence. When ``trace_id`` is given only spans of
    that trace are kept.
    """
    wanted = trace_id.lower() if trace_id else None
    spans: list[dict[str, Any]] = []
    resource_spans = _as_record_array(payload.get("resourceSpans") or payload.get("resource_spans"))
    for rs in resource_spans:
        resource_labels: dict[str, str] = {}
        _attributes_to_labels(_as_record(rs.get("resource")).get("attributes"), resource_labels)

        for ss in _as_record_array(rs.get("scopeSpans") or rs.get("scope_spans") or rs.get("instrumentationLibrarySpans")):
            for span in _as_record_array(ss.get("spans")):
                span_trace_id = _hex_id(span.get("traceId") or span.get("trace_id"))
                if wanted and span_trace_id.lower() != wanted:
                    continue
                labels = dict(resource_labels)
                _attributes_to_labels(span.get("attributes"), labels)
                record: dict[str, Any] = {
                    "spanId": _hex_id(span.get("spanId") or span.get("span_id")),
                    "name": str(span.get("name") or ""),
                    "startTime": _iso_from_nano(span.get("startTimeUnixNano") or span.get("start_time_unix_nano")) or "",
                    "endTime": _iso_from_nano(span.get("endTimeUnixNano") or span.get("end_time_unix_nano")) or "",
                    "labels": labels,
                }
                parent_span_id = _hex_id(span.get("parentSpanId") or span.get("parent_span_id"))
                if parent_span_id:
                    record["parentSpanId"] = parent_span_id
                kind = _otlp_kind(span.get("kind"))
                if kind:
                    record["kind"] = kind
                status = _otlp_status(span.get("status"))
                if status is not None:
                    record["status"] = status
                spans.append(record)
    logger.debug("code=OTLP_PAYLOAD_FLATTENED resource_spans=%s spans=%s", len(resource_spans), len(spans))
    return spans


def spans_from_trace_payload(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return _as_record_array(payload)
    return _as_record_array(_as_record(payload).get("spans"))


def load_raw_spans(payload: Any, trace_id: str | None = None) -> list[dict[str, Any]]:
    record = _as_record(payload)
    if "resourceSpans" in record or "resource_spans" in record:
        return spans_from_otlp_payload(record, trace_id=trace_id)
    return spans_from_trace_payload(payload)


def decode_otlp_body(body: bytes, content_type: str = "", content_encoding: str = "") -> dict[str, Any]:
    try:
        if "gzip" in content_encoding.lower():
            body = gzip.decompress(body)
        lowered = content_type.lower()
        if "application/x-protobuf" in lowered or "application/protobuf" in lowered:
            req = ExportTraceServiceRequest()
            req.ParseFromString(body)
            return _as_record(MessageToDict(req, preserving_proto_field_name=False))
        return _as_record(json.loads(body.decode("utf-8")))
    except (OSError, EOFError, DecodeError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning(
            "code=E_OTLP_BODY_INVALID content_type=%s content_encoding=%s content_length=%s err=%s",
            content_type,
            content_encoding,
            len(body),
            exc,
        )
        raise PayloadDecodeError(f"E_PAYLOAD_DECODE: {exc}") from exc
