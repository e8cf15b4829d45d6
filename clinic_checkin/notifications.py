from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from typing import Callable, Deque, List, Optional

from .config import TOAST_TTL_SECONDS
from .logger import setup_logger
from .types import AutoCheckInEvent

Listener = Callable[[AutoCheckInEvent], None]


def new_event(identity_id: str, display_name: str, entry_id: str, timestamp: float, created: bool = True) -> AutoCheckInEvent:
    return AutoCheckInEvent(
        event_id=f"{identity_id}-{uuid.uuid4().hex[:12]}",
        identity_id=identity_id,
        display_name=display_name,
        timestamp=timestamp,
        entry_id=entry_id,
        created=created,
    )


class CheckInNotifier:
    """Fans auto check-in events out to listeners and keeps recent ones as toasts.

    Delivery is at-least-once; listeners de-duplicate on `event_id`.
    """

    def __init__(self, ttl_seconds: float = TOAST_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._listeners: List[Listener] = []
        self._recent: Deque[AutoCheckInEvent] = deque(maxlen=64)
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def publish(self, event: AutoCheckInEvent) -> None:
        with self._lock:
            self._recent.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                self.logger.exception("Check-in listener failed for event %s", event.event_id)

    def active(self, now: Optional[float] = None) -> List[AutoCheckInEvent]:
        now = self.clock() if now is None else now
        with self._lock:
            return [event for event in self._recent if (now - event.timestamp) < self.ttl_seconds]
