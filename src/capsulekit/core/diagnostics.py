"""Runtime diagnostics envelope + JSONL sink.

Components publish envelopes on the global EventBus through `emit_diag`.
The JSONL sink is registered at most once per process.
"""

from __future__ import annotations

import contextlib
import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from capsulekit.core.events import get_event_bus
from capsulekit.core.logging import get_logger

_logger = get_logger(__name__)

_ENVELOPE_KEYS = frozenset({"event", "component", "operation", "timestamp", "data"})


def build_envelope(
    *,
    event: str,
    component: str,
    operation: str,
    data: dict[str, Any],
) -> dict[str, Any]:
    """Build the canonical diagnostics envelope.

    Schema:
        {
          "event": "<string>",
          "component": "<string>",
          "operation": "<string>",
          "timestamp": "<iso8601 utc>",
          "data": { ... }
        }
    """
    ts = datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return {
        "event": event,
        "component": component,
        "operation": operation,
        "timestamp": ts,
        "data": data,
    }


def duration_ms(t0: float, t1: float) -> int:
    ms = int((t1 - t0) * 1000.0)
    return 0 if ms < 0 else ms


def emit_diag(event: str, *, component: str, operation: str, data: dict[str, Any]) -> None:
    # Diagnostics must not affect runtime behavior.
    with contextlib.suppress(Exception):
        envelope = build_envelope(event=event, component=component, operation=operation, data=data)
        get_event_bus().publish(event, envelope)


def _is_envelope(obj: Any) -> bool:
    return isinstance(obj, dict) and set(obj.keys()) == _ENVELOPE_KEYS


_SINK_LOCK = threading.Lock()
_SINK_PATH: Path | None = None


def _on_any_event(event: str, data: dict[str, Any]) -> None:
    target = _SINK_PATH
    if target is None:
        return
    payload = data if _is_envelope(data) else build_envelope(
        event=event, component="unknown", operation="unknown", data=data
    )
    try:
        line = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True)
        with _SINK_LOCK:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
    except (OSError, TypeError, ValueError) as e:
        _logger.warning(f"Diagnostics sink write failed: {type(e).__name__}: {e}")


def install_jsonl_sink(path: Path) -> None:
    """Append every published envelope to `path` as one JSON line.

    Idempotent: the sink is subscribed once, later calls only change the
    target path.
    """
    global _SINK_PATH

    with _SINK_LOCK:
        _SINK_PATH = path
    bus = get_event_bus()
    bus.unsubscribe_all(_on_any_event)
    bus.subscribe_all(_on_any_event)


def uninstall_jsonl_sink() -> None:
    global _SINK_PATH
    with _SINK_LOCK:
        _SINK_PATH = None
    get_event_bus().unsubscribe_all(_on_any_event)
