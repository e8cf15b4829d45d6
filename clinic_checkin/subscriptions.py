from __future__ import annotations

import threading
from collections import defaultdict
from queue import Empty, Queue
from typing import Callable, Dict, Iterator, List, Optional, Set

from .logger import setup_logger
from .types import QueueEntry

Snapshot = List[QueueEntry]

_CLOSED = object()


class QueueSubscription:
    """A cancellable stream of live-queue snapshots for one clinic.

    Snapshots are buffered without limit so each entry's transitions reach
    the consumer in commit order. Iterating blocks until the next snapshot
    and stops once the subscription is closed.
    """

    def __init__(self, hub: "SubscriptionHub", clinic_id: str, callback: Optional[Callable[[Snapshot], None]] = None):
        self.hub = hub
        self.clinic_id = clinic_id
        self.callback = callback
        self._queue: Queue = Queue()
        self._latest: Optional[Snapshot] = None
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def push(self, snapshot: Snapshot) -> None:
        if self.closed:
            return
        self._latest = snapshot
        if self.callback is not None:
            self.callback(snapshot)
        else:
            self._queue.put(snapshot)

    def get(self, timeout: Optional[float] = None) -> Optional[Snapshot]:
        """Next snapshot, or None on timeout or after close."""
        try:
            item = self._queue.get(timeout=timeout)
        except Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def drain(self) -> List[Snapshot]:
        items: List[Snapshot] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except Empty:
                return items
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return items
            items.append(item)

    def latest(self) -> Optional[Snapshot]:
        return self._latest

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._queue.put(_CLOSED)
        self.hub.unsubscribe(self)

    def __iter__(self) -> Iterator[Snapshot]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def __enter__(self) -> "QueueSubscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SubscriptionHub:
    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[QueueSubscription]] = defaultdict(set)
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def subscribe(self, clinic_id: str, callback: Optional[Callable[[Snapshot], None]] = None) -> QueueSubscription:
        subscription = QueueSubscription(self, clinic_id, callback=callback)
        with self._lock:
            self._subscribers[clinic_id].add(subscription)
        return subscription

    def unsubscribe(self, subscription: QueueSubscription) -> None:
        with self._lock:
            targets = self._subscribers.get(subscription.clinic_id)
            if targets is None:
                return
            targets.discard(subscription)
            if not targets:
                del self._subscribers[subscription.clinic_id]

    def has_subscribers(self, clinic_id: str) -> bool:
        with self._lock:
            return bool(self._subscribers.get(clinic_id))

    def subscriber_count(self, clinic_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(clinic_id, ()))

    def publish(self, clinic_id: str, snapshot: Snapshot) -> None:
        with self._lock:
            targets = list(self._subscribers.get(clinic_id, ()))
        for subscription in targets:
            try:
                subscription.push(list(snapshot))
            except Exception:
                self.logger.exception("Live queue subscriber for %s failed; dropping it", clinic_id)
                subscription.close()
