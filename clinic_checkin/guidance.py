"""Coarse "is someone in front of the camera" check for the alignment overlay.

This is a colour heuristic over a down-sampled frame. It produces no
embedding and must never drive an admission; only `FaceEngine` output is
matched against the registry.
"""

import cv2
import numpy as np

from .config import GUIDANCE_SAMPLE_SIZE, GUIDANCE_SKIN_RATIO, GUIDANCE_WINDOW
from .types import BoundingBox, GuidanceResult


def skin_mask(rgb: np.ndarray) -> np.ndarray:
    r = rgb[..., 0].astype(np.int16)
    g = rgb[..., 1].astype(np.int16)
    b = rgb[..., 2].astype(np.int16)
    return (r > 95) & (g > 40) & (b > 20) & (r > g) & (r > b) & ((r - g) > 15)


def estimate_guidance(
    frame: np.ndarray,
    bgr: bool = True,
    ratio_threshold: float = GUIDANCE_SKIN_RATIO,
) -> GuidanceResult:
    h, w = frame.shape[:2]
    small = cv2.resize(frame, GUIDANCE_SAMPLE_SIZE, interpolation=cv2.INTER_AREA)
    if bgr:
        small = cv2.cvtColor(small, cv2.COLOR_BGR2RGB)

    x, y, ww, wh = GUIDANCE_WINDOW
    window = small[y : y + wh, x : x + ww]
    ratio = float(skin_mask(window).mean()) if window.size else 0.0

    if ratio <= ratio_threshold:
        return GuidanceResult(face_likely=False, skin_ratio=ratio)

    box = BoundingBox(x=w * 0.2, y=h * 0.15, width=w * 0.6, height=h * 0.7)
    return GuidanceResult(face_likely=True, skin_ratio=ratio, box=box)
