"""Process-wide LogBus for streaming log records to subscribers.

Worker pool threads log concurrently, so the subscriber lists are guarded
by a lock and copied before dispatch. Subscriber exceptions never reach the
publishing thread.
"""

from __future__ import annotations

import contextlib
import sys
import threading
import traceback
from collections.abc import Callable
from dataclasses import dataclass

LogCallback = Callable[["LogRecord"], None]


@dataclass(frozen=True)
class LogRecord:
    level_name: str
    plain: str
    logger_name: str


class LogBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs_by_level: dict[str, list[LogCallback]] = {}
        self._subs_all: list[LogCallback] = []

    def subscribe(self, level_name: str, cb: LogCallback) -> None:
        with self._lock:
            self._subs_by_level.setdefault(level_name, []).append(cb)

    def unsubscribe(self, level_name: str, cb: LogCallback) -> None:
        with self._lock:
            subs = self._subs_by_level.get(level_name)
            if not subs or cb not in subs:
                return
            subs.remove(cb)
            if not subs:
                self._subs_by_level.pop(level_name, None)

    def subscribe_all(self, cb: LogCallback) -> None:
        with self._lock:
            self._subs_all.append(cb)

    def unsubscribe_all(self, cb: LogCallback) -> None:
        with self._lock:
            if cb in self._subs_all:
                self._subs_all.remove(cb)

    def publish(self, record: LogRecord) -> None:
        with self._lock:
            targets = list(self._subs_all)
            targets.extend(self._subs_by_level.get(record.level_name, []))
        for cb in targets:
            self._invoke_cb(cb, record)

    def clear(self) -> None:
        with self._lock:
            self._subs_by_level.clear()
            self._subs_all.clear()

    def _invoke_cb(self, cb: LogCallback, record: LogRecord) -> None:
        try:
            cb(record)
        except Exception:
            # Never route through the core logger here (recursion).
            msg = "LogBus subscriber raised; suppressed.\n" + traceback.format_exc()
            with contextlib.suppress(Exception):
                sys.stderr.write(msg)


_LOG_BUS: LogBus | None = None


def get_log_bus() -> LogBus:
    global _LOG_BUS
    if _LOG_BUS is None:
        _LOG_BUS = LogBus()
    return _LOG_BUS
