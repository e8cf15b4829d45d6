from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Request

from clinic_checkin.coordinator import QueueCoordinator
from clinic_checkin.database import Database
from clinic_checkin.matcher import NearestIdentityMatcher
from clinic_checkin.queue_store import QueueStore
from clinic_checkin.registry import BiometricRegistry
from clinic_checkin.resolver import CheckInResolver
from clinic_checkin.session import SessionDirectory

from .config import Settings


@dataclass
class Services:
    db: Database
    registry: BiometricRegistry
    store: QueueStore
    coordinator: QueueCoordinator
    resolver: CheckInResolver
    sessions: SessionDirectory = field(default_factory=SessionDirectory)
    extractor: Optional[Any] = None
    _extractor_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def face_extractor(self):
        # The torch backbone is loaded on the first photo upload only.
        with self._extractor_lock:
            if self.extractor is None:
                from clinic_checkin.face_engine import FaceEngine

                self.extractor = FaceEngine()
            return self.extractor


def build_services(settings: Settings, extractor=None) -> Services:
    db = Database(settings.database_url)
    registry = BiometricRegistry(db)
    store = QueueStore(db)
    coordinator = QueueCoordinator(store)
    resolver = CheckInResolver(
        registry,
        index_provider=lambda: NearestIdentityMatcher(registry.list_all_templates()),
        threshold=settings.match_threshold,
    )
    return Services(
        db=db,
        registry=registry,
        store=store,
        coordinator=coordinator,
        resolver=resolver,
        extractor=extractor,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
