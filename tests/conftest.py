import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import numpy as np
import pytest

from clinic_checkin.coordinator import QueueCoordinator
from clinic_checkin.database import Database
from clinic_checkin.queue_store import QueueStore
from clinic_checkin.registry import BiometricRegistry
from clinic_checkin.types import BoundingBox, DetectedFace, PatientProfile

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StepClock:
    """Datetime clock handing out the given offsets (in seconds) in order."""

    def __init__(self, offsets: Optional[List[float]] = None, step: float = 1.0):
        self.offsets = list(offsets or [])
        self.step = step
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            if self.calls < len(self.offsets):
                offset = self.offsets[self.calls]
            else:
                offset = self.calls * self.step
            self.calls += 1
        return BASE_TIME + timedelta(seconds=offset)


class FakeExtractor:
    """Returns whatever faces the test put in front of the camera."""

    def __init__(self, faces: Optional[List[DetectedFace]] = None):
        self.faces = list(faces or [])
        self.calls = 0

    def detect_faces(self, frame: np.ndarray) -> List[DetectedFace]:
        self.calls += 1
        return list(self.faces)

    def extract(self, region: np.ndarray) -> Optional[np.ndarray]:
        faces = self.detect_faces(region)
        if not faces:
            return None
        return max(faces, key=lambda item: item.box.width * item.box.height).embedding


class SpyRegistry:
    """In-memory profile lookup that records every call."""

    def __init__(self, profiles: Optional[List[PatientProfile]] = None):
        self.profiles = {profile.identity_id: profile for profile in profiles or []}
        self.calls: List[tuple] = []

    def get_profile(self, identity_id: str) -> Optional[PatientProfile]:
        self.calls.append(("get_profile", identity_id))
        return self.profiles.get(identity_id)

    def find_by_short_code(self, code: str) -> Optional[PatientProfile]:
        self.calls.append(("find_by_short_code", code))
        for profile in self.profiles.values():
            if profile.short_code == code.upper():
                return profile
        return None


def face(embedding, x: float = 10.0) -> DetectedFace:
    return DetectedFace(
        box=BoundingBox(x=x, y=10.0, width=80.0, height=80.0),
        embedding=np.asarray(embedding, dtype=np.float32),
    )


def blank_frame() -> np.ndarray:
    return np.zeros((120, 160, 3), dtype=np.uint8)


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'checkin.db'}")
    yield database
    database.dispose()


@pytest.fixture
def registry(db):
    return BiometricRegistry(db)


@pytest.fixture
def store(db):
    return QueueStore(db)


@pytest.fixture
def step_clock():
    return StepClock()


@pytest.fixture
def coordinator(store, step_clock):
    return QueueCoordinator(store, clock=step_clock)
