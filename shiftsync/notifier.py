from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from shiftsync.models import utc_now


logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    kind: str
    calendar_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utc_now)


Subscriber = Callable[[ChangeEvent], None]


class ChangeNotifier:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, kind: str, calendar_id: str, payload: dict[str, Any] | None = None) -> None:
        event = ChangeEvent(kind=kind, calendar_id=calendar_id, payload=dict(payload or {}))
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Change subscriber failed for %s on calendar %s", kind, calendar_id)
