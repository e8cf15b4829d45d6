from __future__ import annotations

import time
from typing import Callable, List, Optional

import numpy as np

from .camera import VideoSource
from .config import ENROLLMENT_MAX_FRAMES, ENROLLMENT_SAMPLES, SAMPLE_EVERY_N_FRAMES
from .exceptions import CheckInError
from .logger import setup_logger
from .registry import BiometricRegistry
from .scanner import DescriptorExtractor
from .types import PatientProfile


def average_embedding(embeddings: List[np.ndarray]) -> np.ndarray:
    matrix = np.vstack(embeddings).astype(np.float32)
    vector = matrix.mean(axis=0)
    norm = np.linalg.norm(vector)
    if norm == 0.0:
        raise CheckInError("Unable to normalize average embedding.")
    return vector / norm


class EnrollmentService:
    """Captures face samples from a video source and stores the averaged template."""

    def __init__(self, registry: BiometricRegistry, extractor: DescriptorExtractor):
        self.registry = registry
        self.extractor = extractor
        self.logger = setup_logger(self.__class__.__name__)

    def capture_samples(
        self,
        source: VideoSource,
        target_samples: int = ENROLLMENT_SAMPLES,
        sample_every_n_frames: int = SAMPLE_EVERY_N_FRAMES,
        max_frames: int = ENROLLMENT_MAX_FRAMES,
        on_status: Optional[Callable[[str, int], None]] = None,
    ) -> List[np.ndarray]:
        if target_samples < 1:
            raise CheckInError("target_samples should be at least 1.")

        collected: List[np.ndarray] = []
        frame_index = 0
        while len(collected) < target_samples and frame_index < max_frames:
            if not source.is_ready():
                frame_index += 1
                continue
            frame = source.read()
            frame_index += 1

            faces = self.extractor.detect_faces(frame)
            if len(faces) == 1:
                if frame_index % max(1, sample_every_n_frames) == 0:
                    collected.append(faces[0].embedding)
                    status = f"Captured sample {len(collected)}/{target_samples}"
                else:
                    status = "Hold still..."
            elif len(faces) > 1:
                status = "Only one face should be visible"
            else:
                status = "No face detected"

            if on_status is not None:
                on_status(status, len(collected))

        if len(collected) < target_samples:
            raise CheckInError(
                f"Insufficient samples captured for enrollment ({len(collected)}/{target_samples})."
            )
        return collected

    def enroll_from_source(
        self,
        identity_id: str,
        display_name: str,
        source: VideoSource,
        target_samples: int = ENROLLMENT_SAMPLES,
        short_code: Optional[str] = None,
        on_status: Optional[Callable[[str, int], None]] = None,
    ) -> PatientProfile:
        started = time.monotonic()
        samples = self.capture_samples(source, target_samples=target_samples, on_status=on_status)
        profile = self.registry.enroll(
            identity_id=identity_id,
            display_name=display_name,
            embedding=average_embedding(samples),
            short_code=short_code,
        )
        self.logger.info(
            "Patient %s enrolled with %d samples in %.1fs",
            identity_id,
            len(samples),
            time.monotonic() - started,
        )
        return profile
