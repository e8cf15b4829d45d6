from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np

from .config import UNKNOWN_DISPLAY_NAME


class QueueStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


ACTIVE_STATUSES: tuple[QueueStatus, ...] = (QueueStatus.WAITING, QueueStatus.IN_PROGRESS)


class Modality(str, Enum):
    CODE = "code"
    QR = "qr"
    BIOMETRIC = "biometric"


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        return cls(x=float(x1), y=float(y1), width=float(x2 - x1), height=float(y2 - y1))

    def as_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class BiometricTemplate:
    identity_id: str
    embedding: np.ndarray

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])


@dataclass
class DetectedFace:
    box: BoundingBox
    embedding: np.ndarray
    confidence: float = 1.0


@dataclass
class RecognizedFace:
    identity_id: Optional[str]
    display_name: str
    box: BoundingBox
    distance: Optional[float] = None

    @property
    def known(self) -> bool:
        return self.identity_id is not None

    @classmethod
    def unknown(cls, box: BoundingBox, distance: Optional[float] = None) -> "RecognizedFace":
        return cls(identity_id=None, display_name=UNKNOWN_DISPLAY_NAME, box=box, distance=distance)


@dataclass(frozen=True)
class PatientProfile:
    identity_id: str
    display_name: str
    short_code: str


@dataclass
class QueueEntry:
    id: str
    clinic_id: str
    identity_id: str
    display_name: str
    short_code: str
    status: QueueStatus
    check_in_time: datetime
    notes: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class CheckInResult:
    entry_id: str
    created: bool


@dataclass(frozen=True)
class AutoCheckInEvent:
    event_id: str
    identity_id: str
    display_name: str
    timestamp: float
    entry_id: str
    created: bool = True


@dataclass
class MatchResult:
    identity_id: Optional[str]
    distance: float

    @property
    def matched(self) -> bool:
        return self.identity_id is not None


@dataclass
class GuidanceResult:
    face_likely: bool
    skin_ratio: float
    box: Optional[BoundingBox] = None


@dataclass
class ScanReport:
    faces: list[RecognizedFace] = field(default_factory=list)
    matched_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ManualCheckIn:
    profile: PatientProfile
    result: CheckInResult
    strategy: str
