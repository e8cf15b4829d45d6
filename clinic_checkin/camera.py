from __future__ import annotations

import os
import threading
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError, CameraPermissionError


class VideoSource(Protocol):
    def is_ready(self) -> bool:
        ...

    def read(self) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


def _preferred_backend_order() -> list[str]:
    raw = os.getenv("CHECKIN_CAMERA_BACKEND_ORDER", "").strip()
    if not raw:
        if os.name == "nt":
            return ["DirectShow", "Media Foundation", "Auto"]
        return ["Auto", "V4L2"]
    mapping = {
        "auto": "Auto",
        "any": "Auto",
        "v4l2": "V4L2",
        "dshow": "DirectShow",
        "directshow": "DirectShow",
        "msmf": "Media Foundation",
    }
    result: list[str] = []
    for item in raw.split(","):
        name = mapping.get(item.strip().lower())
        if name and name not in result:
            result.append(name)
    return result or ["Auto"]


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    backend_map: dict[str, Optional[int]] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
    }
    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set[Optional[int]] = set()
    for name in _preferred_backend_order():
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []

    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)
        if cap.isOpened():
            return cap, backend_name
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraPermissionError(
        f"Camera {camera_index} could not be opened (tried {tried}). Check camera permissions."
    )


class CameraStream:
    """OpenCV webcam exposed as a `VideoSource`.

    The device is opened eagerly but may take a few reads before it delivers
    frames; `is_ready` stays False until the first good frame arrives.
    """

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self._ready = False
        self._lock = threading.Lock()

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self.cap, self.backend_name = open_camera_capture(self.camera_index)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
        self.cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
        self._ready = False

    def is_ready(self) -> bool:
        with self._lock:
            if self.cap is None:
                return False
            if self._ready:
                return True
            ok, frame = self.cap.read()
            self._ready = bool(ok and frame is not None)
            return self._ready

    def read(self) -> np.ndarray:
        with self._lock:
            if self.cap is None:
                raise CameraError("Camera stream is not initialized.")
            ok, frame = self.cap.read()
        if not ok or frame is None:
            raise CameraError("Failed to read frame from camera.")
        return frame

    def close(self) -> None:
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
            self._ready = False


class StillImageSource:
    """Serves one fixed frame; handy for replaying a snapshot through a session."""

    def __init__(self, frame: np.ndarray, warmup_reads: int = 0):
        self.frame = frame
        self._warmup = warmup_reads
        self.closed = False

    def is_ready(self) -> bool:
        if self.closed:
            return False
        if self._warmup > 0:
            self._warmup -= 1
            return False
        return True

    def read(self) -> np.ndarray:
        if self.closed:
            raise CameraError("Source is closed.")
        return self.frame

    def close(self) -> None:
        self.closed = True
