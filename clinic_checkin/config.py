import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip())


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("CHECKIN_DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("CHECKIN_LOG_DIR", BASE_DIR / "logs")
DB_PATH = DATA_DIR / "checkin.db"
DATABASE_URL = os.getenv("CHECKIN_DATABASE_URL", f"sqlite:///{DB_PATH}")

# Webcam settings
CAMERA_INDEX = _int_env("CHECKIN_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("CHECKIN_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("CHECKIN_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("CHECKIN_FRAME_FPS", 30)

# Face detection / embedding
FACE_DETECTION_THRESHOLD = _float_env("CHECKIN_FACE_DETECTION_THRESHOLD", 0.5)
MIN_FACE_SIZE = _int_env("CHECKIN_MIN_FACE_SIZE", 60)
USE_GPU = _bool_env("CHECKIN_USE_GPU", True)

# Guidance heuristic (UI feedback only)
GUIDANCE_SAMPLE_SIZE = (160, 120)
GUIDANCE_WINDOW = (48, 36, 64, 48)
GUIDANCE_SKIN_RATIO = 0.25
GUIDANCE_INTERVAL_SECONDS = _float_env("CHECKIN_GUIDANCE_INTERVAL_SECONDS", 0.25)

# Enrollment
ENROLLMENT_SAMPLES = _int_env("CHECKIN_ENROLLMENT_SAMPLES", 10)
SAMPLE_EVERY_N_FRAMES = _int_env("CHECKIN_SAMPLE_EVERY_N_FRAMES", 3)
ENROLLMENT_MAX_FRAMES = _int_env("CHECKIN_ENROLLMENT_MAX_FRAMES", 600)

# Matching
MATCH_THRESHOLD = _float_env("CHECKIN_MATCH_THRESHOLD", 0.6)

# Scan session
SCAN_INTERVAL_SECONDS = _float_env("CHECKIN_SCAN_INTERVAL_SECONDS", 1.5)
ADMISSION_WORKERS = _int_env("CHECKIN_ADMISSION_WORKERS", 4)
COOLDOWN_SECONDS = _float_env("CHECKIN_COOLDOWN_SECONDS", 30.0)
TOAST_TTL_SECONDS = _float_env("CHECKIN_TOAST_TTL_SECONDS", 4.0)

# Manual check-in
SHORT_CODE_LENGTH = 6
SHORT_CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
SHORT_CODE_ATTEMPTS = _int_env("CHECKIN_SHORT_CODE_ATTEMPTS", 5)
PROFILE_PATH_SEGMENTS = ("public-profile", "profile", "patients")

DEFAULT_DISPLAY_NAME = "Patient"
UNKNOWN_DISPLAY_NAME = "Unknown Visitor"
FACE_SHORT_CODE = "FACE-ID"
