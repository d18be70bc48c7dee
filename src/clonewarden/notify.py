from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from typing import Any, Iterator

from .utils import json_dumps, log_event, utc_now_iso

NOTIFICATION_KINDS = ["progress", "complete", "cost", "state_change"]


class Notifier:
    """Best-effort notification sink with per-session monotonic sequence numbers."""

    def __init__(self) -> None:
        self._sequences: dict[str, Iterator[int]] = defaultdict(lambda: itertools.count(1))
        self._lock = threading.Lock()

    def progress(self, session_id: str, payload: dict[str, Any]) -> None:
        self._emit("progress", session_id, payload)

    def complete(self, session_id: str, payload: dict[str, Any]) -> None:
        self._emit("complete", session_id, payload)

    def cost(self, session_id: str, payload: dict[str, Any]) -> None:
        self._emit("cost", session_id, payload)

    def state_change(self, session_id: str, payload: dict[str, Any]) -> None:
        self._emit("state_change", session_id, payload)

    def _emit(self, kind: str, session_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            sequence = next(self._sequences[session_id])
        message = {
            "kind": kind,
            "session_id": session_id,
            "sequence": sequence,
            "timestamp": utc_now_iso(),
            "payload": payload,
        }
        self.deliver(message)

    def deliver(self, message: dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        super().__init__()
        self._logger = logger or logging.getLogger("clonewarden.notify")

    def deliver(self, message: dict[str, Any]) -> None:
        log_event(
            self._logger,
            logging.INFO,
            f"notify_{message['kind']}",
            session_id=message["session_id"],
            sequence=message["sequence"],
            payload=json_dumps(message["payload"]),
        )


class MemoryNotifier(Notifier):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[dict[str, Any]] = []

    def deliver(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [message for message in self.messages if message["kind"] == kind]
