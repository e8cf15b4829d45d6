from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from clinic_checkin.types import QueueEntry, QueueStatus


class CodeCheckInRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class QRCheckInRequest(BaseModel):
    payload: str = Field(min_length=1, max_length=4096)


class FaceCheckInRequest(BaseModel):
    embedding: list[float] = Field(min_length=1, max_length=2048)


class CheckInResponse(BaseModel):
    entry_id: str
    created: bool
    identity_id: str
    display_name: str
    short_code: str
    strategy: str


class StatusUpdateRequest(BaseModel):
    status: QueueStatus
    notes: Optional[str] = Field(default=None, max_length=4000)


class QueueEntryResponse(BaseModel):
    id: str
    clinic_id: str
    identity_id: str
    display_name: str
    short_code: str
    status: QueueStatus
    check_in_time: datetime
    notes: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryResponse":
        return cls(
            id=entry.id,
            clinic_id=entry.clinic_id,
            identity_id=entry.identity_id,
            display_name=entry.display_name,
            short_code=entry.short_code,
            status=entry.status,
            check_in_time=entry.check_in_time,
            notes=entry.notes,
        )


def snapshot_message(clinic_id: str, entries: list[QueueEntry]) -> dict:
    return {
        "type": "queue_snapshot",
        "clinic_id": clinic_id,
        "entries": [QueueEntryResponse.from_entry(entry).model_dump(mode="json") for entry in entries],
    }
