import threading
from typing import Dict

from .config import COOLDOWN_SECONDS


class CooldownTracker:
    """Per-identity timestamps of the last automatic admission.

    Only suppresses redundant registry/queue round-trips for a face that
    lingers in frame; the queue's own duplicate check still applies.
    """

    def __init__(self, window_seconds: float = COOLDOWN_SECONDS):
        self.window_seconds = float(window_seconds)
        self._last_admitted: Dict[str, float] = {}
        self._lock = threading.Lock()

    def should_admit(self, identity_id: str, now: float) -> bool:
        with self._lock:
            last = self._last_admitted.get(identity_id)
        if last is None:
            return True
        return (now - last) >= self.window_seconds

    def try_reserve(self, identity_id: str, now: float) -> bool:
        """Check the window and claim it for `identity_id` in one step."""
        with self._lock:
            last = self._last_admitted.get(identity_id)
            if last is not None and (now - last) < self.window_seconds:
                return False
            self._last_admitted[identity_id] = now
            return True

    def release(self, identity_id: str, now: float) -> None:
        """Drop a reservation taken at `now` whose admission did not go through."""
        with self._lock:
            if self._last_admitted.get(identity_id) == now:
                del self._last_admitted[identity_id]

    def record_admission(self, identity_id: str, now: float) -> None:
        with self._lock:
            self._last_admitted[identity_id] = now

    def forget(self, identity_id: str) -> None:
        with self._lock:
            self._last_admitted.pop(identity_id, None)

    def prune(self, now: float) -> int:
        with self._lock:
            expired = [key for key, ts in self._last_admitted.items() if (now - ts) >= self.window_seconds]
            for key in expired:
                del self._last_admitted[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._last_admitted.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_admitted)
