from __future__ import annotations

import gzip
import json

import pytest
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import ExportTraceServiceRequest
from opentelemetry.proto.common.v1.common_pb2 import AnyValue, KeyValue
from opentelemetry.proto.trace.v1.trace_pb2 import ResourceSpans, ScopeSpans, Span, Status

from infrastructure.span_payloads import (
    PayloadDecodeError,
    decode_otlp_body,
    load_raw_spans,
    spans_from_otlp_payload,
    spans_from_trace_payload,
)

TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
OTHER_TRACE_ID = "ffffffffffffffffffffffffffffffff"


def _otlp_payload() -> dict:
    return {
        "resourceSpans": [
            {
                "resource": {
                    "attributes": [
                        {"key": "service.name", "value": {"stringValue": "checkout"}},
                        {"key": "host.name", "value": {"stringValue": "node-1"}},
                    ]
                },
                "scopeSpans": [
                    {
                        "spans": [
                            {
                                "traceId": TRACE_ID,
                                "spanId": "B7AD6B7169203331",
                                "parentSpanId": "",
                                "name": "GET /cart",
                                "kind": 2,
                                "startTimeUnixNano": "1704067200000000000",
                                "endTimeUnixNano": "1704067200250000000",
                                "attributes": [
                                    {"key": "http.status_code", "value": {"intValue": "500"}},
                                    {"key": "retry", "value": {"boolValue": True}},
                                    {"key": "host.name", "value": {"stringValue": "node-2"}},
                                    {
                                        "key": "tags",
                                        "value": {"arrayValue": {"values": [{"stringValue": "a"}, {"stringValue": "b"}]}},
                                    },
                                ],
                                "status": {"code": 2, "message": "boom"},
                            },
                            {"traceId": OTHER_TRACE_ID, "spanId": "00f067aa0ba902b7", "name": "other"},
                        ]
                    }
                ],
            }
        ]
    }


def test_spans_from_otlp_payload_maps_fields() -> None:
    spans = spans_from_otlp_payload(_otlp_payload(), trace_id=TRACE_ID)
    assert spans == [
        {
            "spanId": "b7ad6b7169203331",
            "name": "GET /cart",
            "startTime": "2024-01-01T00:00:00+00:00",
            "endTime": "2024-01-01T00:00:00.250000+00:00",
            "labels": {
                "service.name": "checkout",
                "host.name": "node-2",
                "http.status_code": "500",
                "retry": "true",
                "tags": '["a","b"]',
            },
            "kind": "SERVER",
            "status": {"code": 2, "message": "boom"},
        }
    ]


def test_spans_from_otlp_payload_without_filter_keeps_all_traces() -> None:
    spans = spans_from_otlp_payload(_otlp_payload())
    assert [span["spanId"] for span in spans] == ["b7ad6b7169203331", "00f067aa0ba902b7"]
    assert spans[1]["startTime"] == ""
    assert "kind" not in spans[1]
    assert "status" not in spans[1]


@pytest.mark.parametrize(
    ("kind", "status", "expected_kind", "expected_status"),
    [
        ("SPAN_KIND_CLIENT", {"code": "STATUS_CODE_OK"}, "CLIENT", {"code": 0}),
        ("SPAN_KIND_UNSPECIFIED", {"code": "STATUS_CODE_UNSET"}, None, None),
        (5, {"code": 1}, "CONSUMER", {"code": 0}),
        (0, {}, None, None),
    ],
)
def test_otlp_kind_and_status_mapping(kind, status, expected_kind, expected_status) -> None:
    payload = {
        "resourceSpans": [
            {"scopeSpans": [{"spans": [{"traceId": TRACE_ID, "spanId": "s", "kind": kind, "status": status}]}]}
        ]
    }
    [span] = spans_from_otlp_payload(payload)
    assert span.get("kind") == expected_kind
    assert span.get("status") == expected_status


def test_spans_from_trace_payload_shapes() -> None:
    assert spans_from_trace_payload([{"spanId": "a"}, "junk", None]) == [{"spanId": "a"}]
    assert spans_from_trace_payload({"spans": [{"spanId": "b"}]}) == [{"spanId": "b"}]
    assert spans_from_trace_payload({"traceId": "x"}) == []
    assert spans_from_trace_payload("nope") == []


def test_load_raw_spans_dispatches_on_payload_shape() -> None:
    assert [s["spanId"] for s in load_raw_spans(_otlp_payload(), trace_id=TRACE_ID)] == ["b7ad6b7169203331"]
    assert load_raw_spans({"spans": [{"spanId": "a"}]}, trace_id=TRACE_ID) == [{"spanId": "a"}]
    assert load_raw_spans(None) == []


def test_decode_otlp_body_json_and_gzip() -> None:
    body = json.dumps(_otlp_payload()).encode("utf-8")
    assert decode_otlp_body(body, "application/json") == _otlp_payload()
    assert decode_otlp_body(gzip.compress(body), "application/json", "gzip") == _otlp_payload()


def test_decode_otlp_body_protobuf_round_trip() -> None:
    span = Span(
        trace_id=bytes.fromhex(TRACE_ID),
        span_id=bytes.fromhex("b7ad6b7169203331"),
        parent_span_id=bytes.fromhex("00f067aa0ba902b7"),
        name="charge",
        kind=Span.SpanKind.SPAN_KIND_CLIENT,
        start_time_unix_nano=1704067200000000000,
        end_time_unix_nano=1704067200250000000,
        attributes=[KeyValue(key="attempt", value=AnyValue(int_value=3))],
        status=Status(code=Status.StatusCode.STATUS_CODE_ERROR, message="declined"),
    )
    request = ExportTraceServiceRequest(resource_spans=[ResourceSpans(scope_spans=[ScopeSpans(spans=[span])])])
    body = gzip.compress(request.SerializeToString())

    payload = decode_otlp_body(body, "application/x-protobuf", "gzip")
    [record] = spans_from_otlp_payload(payload, trace_id=TRACE_ID)

    assert record["spanId"] == "b7ad6b7169203331"
    assert record["parentSpanId"] == "00f067aa0ba902b7"
    assert record["name"] == "charge"
    assert record["kind"] == "CLIENT"
    assert record["status"] == {"code": 2, "message": "declined"}
    assert record["labels"] == {"attempt": "3"}
    assert record["startTime"] == "2024-01-01T00:00:00+00:00"
    assert record["endTime"] == "2024-01-01T00:00:00.250000+00:00"


@pytest.mark.parametrize(
    ("body", "content_type", "content_encoding"),
    [
        (b"{not json", "application/json", ""),
        (b"not gzip", "application/json", "gzip"),
        (b"\xff\xfe", "application/json", ""),
    ],
)
def test_decode_otlp_body_rejects_bad_input(body: bytes, content_type: str, content_encoding: str) -> None:
    with pytest.raises(PayloadDecodeError) as exc_info:
        decode_otlp_body(body, content_type, content_encoding)
    assert str(exc_info.value).startswith("E_PAYLOAD_DECODE")


def test_malformed_otlp_values_degrade_without_raising() -> None:
    payload = {
        "resourceSpans": [
            {
                "scopeSpans": [
                    {
                        "spans": [
                            {
                                "traceId": TRACE_ID,
                                "spanId": "b7ad6b7169203331",
                                "name": "broken",
                                "startTimeUnixNano": "9" * 30,
                                "endTimeUnixNano": "not-a-number",
                                "attributes": [
                                    {"key": "retries", "value": {"intValue": "abc"}},
                                    {"key": "ratio", "value": {"doubleValue": "half"}},
                                ],
                            }
                        ]
                    }
                ]
            }
        ]
    }
    [span] = spans_from_otlp_payload(payload, trace_id=TRACE_ID)
    assert span["startTime"] == ""
    assert span["endTime"] == ""
    assert span["labels"] == {"retries": "abc", "ratio": "half"}
