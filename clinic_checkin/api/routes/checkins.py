from __future__ import annotations

from typing import Union

import numpy as np
from fastapi import APIRouter, Depends, File, UploadFile

from clinic_checkin.api.deps import Services, get_services
from clinic_checkin.api.schemas import CheckInResponse, CodeCheckInRequest, FaceCheckInRequest, QRCheckInRequest
from clinic_checkin.exceptions import CheckInError, NoFaceDetected
from clinic_checkin.qr import decode_image, decode_qr
from clinic_checkin.types import Modality

router = APIRouter(prefix="/clinics/{clinic_id}/checkins", tags=["checkins"])


def _check_in(services: Services, clinic_id: str, value: Union[str, np.ndarray], modality: Modality) -> CheckInResponse:
    session = services.sessions.get(clinic_id)
    if session is not None:
        # A running scanner must see manual admissions in its cooldown.
        manual = session.check_in(value, modality)
        profile, result, strategy = manual.profile, manual.result, manual.strategy
    else:
        resolution = services.resolver.resolve_with_strategy(value, modality)
        profile = services.resolver.profile_for(resolution)
        result = services.coordinator.admit(clinic_id, profile.identity_id, profile.display_name, profile.short_code)
        strategy = resolution.strategy
    return CheckInResponse(
        entry_id=result.entry_id,
        created=result.created,
        identity_id=profile.identity_id,
        display_name=profile.display_name,
        short_code=profile.short_code,
        strategy=strategy,
    )


@router.post("/code", response_model=CheckInResponse)
def check_in_by_code(clinic_id: str, payload: CodeCheckInRequest, services: Services = Depends(get_services)):
    return _check_in(services, clinic_id, payload.code, Modality.CODE)


@router.post("/qr", response_model=CheckInResponse)
def check_in_by_qr(clinic_id: str, payload: QRCheckInRequest, services: Services = Depends(get_services)):
    return _check_in(services, clinic_id, payload.payload, Modality.QR)


@router.post("/qr-image", response_model=CheckInResponse)
def check_in_by_qr_image(clinic_id: str, image: UploadFile = File(...), services: Services = Depends(get_services)):
    frame = decode_image(image.file.read())
    payload = decode_qr(frame)
    if not payload:
        raise CheckInError("No QR code found in the uploaded image.")
    return _check_in(services, clinic_id, payload, Modality.QR)


@router.post("/face", response_model=CheckInResponse)
def check_in_by_face(clinic_id: str, payload: FaceCheckInRequest, services: Services = Depends(get_services)):
    embedding = np.asarray(payload.embedding, dtype=np.float32)
    return _check_in(services, clinic_id, embedding, Modality.BIOMETRIC)


@router.post("/face-image", response_model=CheckInResponse)
def check_in_by_face_image(clinic_id: str, image: UploadFile = File(...), services: Services = Depends(get_services)):
    frame = decode_image(image.file.read())
    embedding = services.face_extractor().extract(frame)
    if embedding is None:
        raise NoFaceDetected("No face detected in the uploaded image.")
    return _check_in(services, clinic_id, embedding, Modality.BIOMETRIC)
