from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Union
from urllib.parse import unquote, urlparse

import numpy as np

from .config import MATCH_THRESHOLD, PROFILE_PATH_SEGMENTS, SHORT_CODE_LENGTH
from .exceptions import AmbiguousCheckInInput, NoMatchFound
from .logger import setup_logger
from .matcher import IdentityIndex
from .types import Modality, PatientProfile


class ProfileLookup(Protocol):
    def get_profile(self, identity_id: str) -> Optional[PatientProfile]:
        ...

    def find_by_short_code(self, code: str) -> Optional[PatientProfile]:
        ...


@dataclass(frozen=True)
class Resolution:
    identity_id: str
    strategy: str
    profile: Optional[PatientProfile] = None


class CheckInResolver:
    """Turns a manual code, a QR payload or an embedding into one identity id.

    QR payloads are tried as JSON (`uid` or `code` field), then as a profile
    URL, then as a raw code (verbatim, then its first six characters). A
    profile URL is taken at face value and skips the remaining strategies.
    """

    def __init__(
        self,
        registry: ProfileLookup,
        index_provider: Optional[Callable[[], IdentityIndex]] = None,
        code_length: int = SHORT_CODE_LENGTH,
        threshold: float = MATCH_THRESHOLD,
    ):
        self.registry = registry
        self.index_provider = index_provider
        self.code_length = code_length
        self.threshold = threshold
        self.logger = setup_logger(self.__class__.__name__)

    def resolve(self, value: Union[str, np.ndarray], modality: Union[Modality, str]) -> str:
        return self.resolve_with_strategy(value, modality).identity_id

    def resolve_profile(self, value: Union[str, np.ndarray], modality: Union[Modality, str]) -> PatientProfile:
        return self.profile_for(self.resolve_with_strategy(value, modality))

    def profile_for(self, resolution: Resolution) -> PatientProfile:
        if resolution.profile is not None:
            return resolution.profile
        profile = self.registry.get_profile(resolution.identity_id)
        if profile is None:
            raise AmbiguousCheckInInput(resolution.identity_id, reason="No patient profile for")
        return profile

    def resolve_with_strategy(self, value: Union[str, np.ndarray], modality: Union[Modality, str]) -> Resolution:
        modality = Modality(modality)
        if modality is Modality.CODE:
            return self._resolve_code(str(value))
        if modality is Modality.QR:
            return self._resolve_qr(str(value))
        return self._resolve_biometric(value)

    def _resolve_code(self, value: str) -> Resolution:
        code = value.strip().upper()
        if len(code) != self.code_length:
            raise AmbiguousCheckInInput(code, reason=f"Short codes must be exactly {self.code_length} characters, got")
        profile = self.registry.find_by_short_code(code)
        if profile is None:
            raise AmbiguousCheckInInput(code)
        return Resolution(profile.identity_id, "code", profile)

    def _resolve_qr(self, payload: str) -> Resolution:
        raw = payload.strip()
        normalized = raw.upper()
        if not raw:
            raise AmbiguousCheckInInput(normalized, reason="Empty QR payload")

        remaining = raw
        data = self._parse_json(raw)
        if data is not None:
            uid = data.get("uid")
            if uid:
                profile = self.registry.get_profile(str(uid))
                if profile is not None:
                    return Resolution(profile.identity_id, "json-uid", profile)
            code = data.get("code")
            remaining = str(code).strip() if code else ""

        url = urlparse(remaining)
        if url.scheme in ("http", "https") and url.netloc:
            segments = [unquote(part) for part in url.path.split("/") if part]
            for idx, segment in enumerate(segments[:-1]):
                if segment in PROFILE_PATH_SEGMENTS:
                    return Resolution(segments[idx + 1], "url-path")
            remaining = segments[-1] if segments else ""

        if remaining:
            candidate = remaining.upper()
            profile = self.registry.find_by_short_code(candidate)
            if profile is not None:
                return Resolution(profile.identity_id, "raw-code", profile)
            if len(candidate) > self.code_length:
                profile = self.registry.find_by_short_code(candidate[: self.code_length])
                if profile is not None:
                    return Resolution(profile.identity_id, "raw-code-prefix", profile)

        self.logger.info("QR payload did not resolve: %s", normalized)
        raise AmbiguousCheckInInput(normalized)

    def _resolve_biometric(self, value: Any) -> Resolution:
        if self.index_provider is None:
            raise NoMatchFound("Biometric check-in is not configured.")
        result = self.index_provider().match(np.asarray(value, dtype=np.float32), self.threshold)
        if result.identity_id is None:
            raise NoMatchFound(f"No enrolled face within {self.threshold:.2f} (best {result.distance:.3f}).")
        return Resolution(result.identity_id, "biometric")

    @staticmethod
    def _parse_json(raw: str) -> Optional[dict]:
        if not raw.startswith("{"):
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
