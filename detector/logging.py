"""
detector.logging
AUTHOR: carter-vin

Structured JSON event logging for ops ingestion

Contract:
- One JSON object per line to stderr (stdout carries the resource JSON)
- Stable event vocabulary (allowlist)
- Level threshold from CONTAINER_ID_DETECTOR_LOG_LEVEL (default "info")
- UTC timestamps only
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timezone
from typing import Any

from detector.model import DETECTOR_VERSION

LOG_LEVEL_ENV = "CONTAINER_ID_DETECTOR_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "info"

LEVELS = {
    "debug": 10,
    "info": 20,
    "warning": 30,
}

# Event types
VALID_EVENT_TYPES = {
    "detector_start",
    "detection_completed",
    "probe_skipped",
    "probe_failed",
    "container_id_found",
    "file_read_failed",
    "kube_request_failed",
    "certificate_load_failed",
    "ssl_policy_error",
    "certificate_invalid",
    "certificate_chain_invalid",
    "certificate_untrusted",
    "resource_write_failed",
    "detector_shutdown",
}


def _truncate_message(value: str, *, limit: int = 200) -> str:
    """
    Cap message length to keep events compact
    """
    if len(value) <= limit:
        return value
    return value[:limit] + f"...[truncated {len(value) - limit} chars]"


# Time: current in UTC ISO 8601
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _threshold() -> int:
    name = os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).strip().lower()
    return LEVELS.get(name, LEVELS[DEFAULT_LOG_LEVEL])


def emit_event(event_type: str, *, level: str = "info", **fields: Any) -> None:
    """
    Emit structured event line to stderr

    Rules:
    - event_type in VALID_EVENT_TYPES, level in LEVELS
    - event_type, level, detector_version, timestamp always present
    - events below the configured threshold are dropped
    - sort_keys + compact separators for format
    """
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(f"invalid event_type: {event_type}")
    if level not in LEVELS:
        raise ValueError(f"invalid level: {level}")

    if LEVELS[level] < _threshold():
        return

    if "message" in fields and isinstance(fields["message"], str):
        # Avoid emitting long strings in event fields
        fields["message"] = _truncate_message(fields["message"])

    payload: dict[str, Any] = {
        "event_type": event_type,
        "level": level,
        "utc_now": utc_now_iso(),
        "detector_version": DETECTOR_VERSION,
        **fields,
    }

    print(
        json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        ),
        file=sys.stderr,
    )
