from typing import Optional

import cv2
import numpy as np

from .camera import VideoSource
from .exceptions import CameraError, CheckInError
from .logger import setup_logger

logger = setup_logger("QRReader")


def decode_image(raw: bytes) -> np.ndarray:
    """Decode uploaded image bytes into a BGR frame."""
    if not raw:
        raise CheckInError("Empty image upload.")
    image = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise CheckInError("Invalid image file.")
    return image


def decode_qr(frame: np.ndarray) -> Optional[str]:
    if frame is None or frame.size == 0:
        return None
    detector = cv2.QRCodeDetector()
    try:
        data, _points, _ = detector.detectAndDecode(frame)
    except cv2.error as exc:
        logger.debug("QR detection failed: %s", exc)
        return None
    return data or None


def read_qr_from_source(source: VideoSource, max_frames: int = 150) -> Optional[str]:
    """Poll a video source until a QR code decodes or the frame budget runs out."""
    for _ in range(max_frames):
        if not source.is_ready():
            continue
        try:
            frame = source.read()
        except CameraError as exc:
            logger.debug("Skipping unreadable frame: %s", exc)
            continue
        payload = decode_qr(frame)
        if payload:
            return payload
    return None
