from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_LOGS_URI_TEMPLATE = "gcp-trace://{project_id}/traces/{trace_id}/logs"


@dataclass(frozen=True)
class RenderSettings:
    max_other_attributes: int = 5
    max_depth: int = 64
    seconds_threshold_ms: int = 1000
    minutes_threshold_ms: int = 60000
    logs_uri_template: str | None = DEFAULT_LOGS_URI_TEMPLATE

    def logs_uri(self, project_id: str, trace_id: str) -> str | None:
        if not self.logs_uri_template:
            return None
        return self.logs_uri_template.format(project_id=project_id, trace_id=trace_id)


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid integer env {name}={raw!r}") from e


def _as_positive_int(name: str, default: int, *, allow_zero: bool = False) -> int:
    value = _as_int(name, default)
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"Invalid positive integer env {name}={value!r}")
    return value


def _as_template(name: str, default: str | None) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return None
    try:
        raw.format(project_id="p", trace_id="t")
    except (KeyError, IndexError, ValueError) as e:
        raise ValueError(f"Invalid template env {name}={raw!r}, allowed fields are project_id/trace_id") from e
    return raw


def load_settings() -> RenderSettings:
    seconds_threshold_ms = _as_positive_int("TRACE_RENDER_SECONDS_THRESHOLD_MS", 1000)
    minutes_threshold_ms = _as_positive_int("TRACE_RENDER_MINUTES_THRESHOLD_MS", 60000)
    if minutes_threshold_ms < seconds_threshold_ms:
        raise ValueError(
            "Invalid duration thresholds: TRACE_RENDER_MINUTES_THRESHOLD_MS must not be below "
            "TRACE_RENDER_SECONDS_THRESHOLD_MS"
        )
    return RenderSettings(
        max_other_attributes=_as_positive_int("TRACE_RENDER_MAX_OTHER_ATTRIBUTES", 5, allow_zero=True),
        max_depth=_as_positive_int("TRACE_RENDER_MAX_DEPTH", 64),
        seconds_threshold_ms=seconds_threshold_ms,
        minutes_threshold_ms=minutes_threshold_ms,
        logs_uri_template=_as_template("TRACE_RENDER_LOGS_URI_TEMPLATE", DEFAULT_LOGS_URI_TEMPLATE),
    )
