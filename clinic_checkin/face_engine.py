"""Descriptor extraction: mediapipe finds faces, a ResNet-18 trunk embeds them.

Embeddings are 512-d and L2-normalised so Euclidean distances between them
fall in [0, 2] and the 0.6 match threshold is meaningful.
"""

from typing import List, Optional, Tuple

import cv2
import mediapipe as mp
import numpy as np
import torch
import torch.nn.functional as F
from torchvision.models import ResNet18_Weights, resnet18

from .config import FACE_DETECTION_THRESHOLD, MIN_FACE_SIZE, USE_GPU
from .exceptions import FaceEngineError
from .types import BoundingBox, DetectedFace

EMBEDDING_SIZE = 512
INPUT_SIZE = 224
CROP_MARGIN = 1.05

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


def default_device() -> str:
    return "cuda" if USE_GPU and torch.cuda.is_available() else "cpu"


def square_region(box: BoundingBox, frame_w: int, frame_h: int) -> Optional[BoundingBox]:
    """Grow `box` into a centred square a little larger than the face, clipped to the frame."""
    side = int(max(box.width, box.height) * CROP_MARGIN)
    left = max(0, int(box.x + box.width / 2) - side // 2)
    top = max(0, int(box.y + box.height / 2) - side // 2)
    right = min(frame_w, left + side)
    bottom = min(frame_h, top + side)
    if right <= left or bottom <= top:
        return None
    return BoundingBox.from_corners(left, top, right, bottom)


def normalise_lighting(rgb_crop: np.ndarray, clahe) -> np.ndarray:
    # Only the luma channel is equalised; chroma (skin tone) is left alone.
    y, cr, cb = cv2.split(cv2.cvtColor(rgb_crop, cv2.COLOR_RGB2YCrCb))
    return cv2.cvtColor(cv2.merge([clahe.apply(y), cr, cb]), cv2.COLOR_YCrCb2RGB)


def resize_for_backbone(rgb_crop: np.ndarray) -> np.ndarray:
    upscaling = min(rgb_crop.shape[:2]) < INPUT_SIZE
    return cv2.resize(
        rgb_crop,
        (INPUT_SIZE, INPUT_SIZE),
        interpolation=cv2.INTER_CUBIC if upscaling else cv2.INTER_AREA,
    )


class FaceLocator:
    """Thin wrapper over mediapipe's short-range face detector."""

    def __init__(self, min_confidence: float, min_size: int):
        self.min_confidence = min_confidence
        self.min_size = min_size
        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=0,
            min_detection_confidence=min_confidence,
        )

    def locate(self, rgb: np.ndarray) -> List[Tuple[BoundingBox, float]]:
        frame_h, frame_w = rgb.shape[:2]
        found = []
        for detection in self._detector.process(rgb).detections or []:
            confidence = float(detection.score[0]) if detection.score else 0.0
            if confidence < self.min_confidence:
                continue
            rel = detection.location_data.relative_bounding_box
            left, top = max(0, int(rel.xmin * frame_w)), max(0, int(rel.ymin * frame_h))
            right = min(frame_w, left + int(rel.width * frame_w))
            bottom = min(frame_h, top + int(rel.height * frame_h))
            if min(right - left, bottom - top) < self.min_size:
                continue
            found.append((BoundingBox.from_corners(left, top, right, bottom), confidence))
        return found


class EmbeddingBackbone:
    """ImageNet ResNet-18 with the classifier head removed."""

    def __init__(self, device: torch.device):
        self.device = device
        model = resnet18(weights=ResNet18_Weights.DEFAULT)
        model.fc = torch.nn.Identity()
        self._model = model.eval().to(device)
        self._mean = torch.tensor(IMAGENET_MEAN, device=device).view(1, 3, 1, 1)
        self._std = torch.tensor(IMAGENET_STD, device=device).view(1, 3, 1, 1)

    @torch.inference_mode()
    def embed(self, rgb_crops: List[np.ndarray]) -> np.ndarray:
        batch = torch.from_numpy(np.stack(rgb_crops)).to(self.device)
        batch = batch.permute(0, 3, 1, 2).float().div_(255.0)
        features = self._model((batch - self._mean) / self._std)
        return F.normalize(features, p=2, dim=1).cpu().numpy().astype(np.float32)


class FaceEngine:
    """Face detector plus embedding backbone.

    "No face" is a normal outcome: `detect_faces` returns an empty list and
    `extract` returns None. Only model failures raise `FaceEngineError`.
    """

    dimension = EMBEDDING_SIZE

    def __init__(
        self,
        device: Optional[str] = None,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
    ):
        try:
            self.locator = FaceLocator(detection_threshold, min_face_size)
            self.backbone = EmbeddingBackbone(torch.device(device or default_device()))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc
        self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))

    def detect_faces(self, frame: np.ndarray) -> List[DetectedFace]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            located = self.locator.locate(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        frame_h, frame_w = rgb.shape[:2]
        regions, crops, confidences = [], [], []
        for box, confidence in located:
            region = square_region(box, frame_w, frame_h)
            if region is None:
                continue
            left, top = int(region.x), int(region.y)
            crop = rgb[top : top + int(region.height), left : left + int(region.width)]
            crops.append(normalise_lighting(resize_for_backbone(crop), self.clahe))
            regions.append(region)
            confidences.append(confidence)

        if not crops:
            return []
        try:
            embeddings = self.backbone.embed(crops)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc
        return [
            DetectedFace(box=region, embedding=embeddings[i], confidence=confidences[i])
            for i, region in enumerate(regions)
        ]

    def extract(self, region: np.ndarray) -> Optional[np.ndarray]:
        """Embedding of the largest face in `region`, or None when there is none."""
        faces = self.detect_faces(region)
        if not faces:
            return None
        return max(faces, key=lambda item: item.box.width * item.box.height).embedding
