from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Hashable, List, Optional, Union

from .database import utcnow
from .exceptions import InvalidStatusTransition, QueueEntryNotFound, QueueStoreUnavailable
from .logger import setup_logger
from .queue_store import ActiveQueueQuery, QueueStore
from .subscriptions import QueueSubscription, SubscriptionHub
from .types import CheckInResult, QueueEntry, QueueStatus

ALLOWED_TRANSITIONS: Dict[QueueStatus, frozenset] = {
    QueueStatus.WAITING: frozenset({QueueStatus.IN_PROGRESS, QueueStatus.COMPLETED}),
    QueueStatus.IN_PROGRESS: frozenset({QueueStatus.COMPLETED}),
    QueueStatus.COMPLETED: frozenset(),
}


def validate_transition(entry: QueueEntry, requested: QueueStatus) -> None:
    if requested not in ALLOWED_TRANSITIONS[entry.status]:
        raise InvalidStatusTransition(entry.id, entry.status.value, requested.value)


class KeyedLocks:
    """One mutex per key, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            return self._locks[key]


class QueueCoordinator:
    """Owns the clinic queue: idempotent check-in, status changes, live snapshots."""

    def __init__(
        self,
        store: QueueStore,
        hub: Optional[SubscriptionHub] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hub = hub or SubscriptionHub()
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)
        self._identity_locks = KeyedLocks()
        self._entry_locks = KeyedLocks()
        self._publish_locks = KeyedLocks()
        self._queries: Dict[str, ActiveQueueQuery] = {}

    def check_in(self, clinic_id: str, identity_id: str, display_name: str, short_code: str) -> str:
        return self.admit(clinic_id, identity_id, display_name, short_code).entry_id

    def admit(self, clinic_id: str, identity_id: str, display_name: str, short_code: str) -> CheckInResult:
        with self._identity_locks.get((clinic_id, identity_id)):
            result = self.store.create_or_get_active(
                clinic_id=clinic_id,
                identity_id=identity_id,
                display_name=display_name,
                short_code=short_code,
                check_in_time=self.clock(),
            )

        if result.created:
            self.logger.info("Checked in %s (%s) at clinic %s as %s", display_name, identity_id, clinic_id, result.entry_id)
            self._publish(clinic_id)
        else:
            self.logger.debug("%s already active at clinic %s as %s", identity_id, clinic_id, result.entry_id)
        return result

    def update_status(
        self,
        entry_id: str,
        status: Union[QueueStatus, str],
        notes: Optional[str] = None,
    ) -> QueueEntry:
        requested = QueueStatus(status)
        with self._entry_locks.get(entry_id):
            entry = self.store.transition(entry_id, requested, notes, validate_transition)
        self.logger.info("Queue entry %s is now %s", entry_id, requested.value)
        self._publish(entry.clinic_id)
        return entry

    def begin(self, entry_id: str) -> QueueEntry:
        return self.update_status(entry_id, QueueStatus.IN_PROGRESS)

    def complete(self, entry_id: str, notes: Optional[str] = None) -> QueueEntry:
        return self.update_status(entry_id, QueueStatus.COMPLETED, notes)

    def get_entry(self, entry_id: str) -> QueueEntry:
        entry = self.store.get(entry_id)
        if entry is None:
            raise QueueEntryNotFound(f"Queue entry {entry_id} does not exist.")
        return entry

    def active_entries(self, clinic_id: str) -> List[QueueEntry]:
        query = self._queries.get(clinic_id)
        if query is None:
            query = self._queries.setdefault(clinic_id, ActiveQueueQuery(self.store, clinic_id))
        return query.fetch()

    def subscribe_live_queue(
        self,
        clinic_id: str,
        callback: Optional[Callable[[List[QueueEntry]], None]] = None,
    ) -> QueueSubscription:
        with self._publish_locks.get(clinic_id):
            subscription = self.hub.subscribe(clinic_id, callback=callback)
            try:
                subscription.push(self.active_entries(clinic_id))
            except Exception:
                subscription.close()
                raise
        return subscription

    def _publish(self, clinic_id: str) -> None:
        if not self.hub.has_subscribers(clinic_id):
            return
        # Snapshots are read and pushed under one lock so consumers see them in commit order.
        with self._publish_locks.get(clinic_id):
            try:
                snapshot = self.active_entries(clinic_id)
            except QueueStoreUnavailable:
                self.logger.exception("Failed to refresh live queue for %s", clinic_id)
                return
            self.hub.publish(clinic_id, snapshot)
