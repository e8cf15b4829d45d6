from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Union

import numpy as np

from .admission import AdmissionPipeline, ProfileCache
from .camera import VideoSource
from .config import (
    ADMISSION_WORKERS,
    COOLDOWN_SECONDS,
    GUIDANCE_INTERVAL_SECONDS,
    MATCH_THRESHOLD,
    SCAN_INTERVAL_SECONDS,
)
from .coordinator import QueueCoordinator
from .cooldown import CooldownTracker
from .exceptions import CameraError, CameraPermissionError, RegistryUnavailable
from .guidance import estimate_guidance
from .logger import setup_logger
from .matcher import IdentityIndex, NearestIdentityMatcher
from .notifications import CheckInNotifier
from .registry import BiometricRegistry
from .resolver import CheckInResolver
from .scanner import DescriptorExtractor, FrameScanScheduler
from .types import GuidanceResult, ManualCheckIn, Modality, RecognizedFace, ScanReport


class ScanSession:
    """Everything one camera scanning session owns.

    The cooldown map, profile cache and template snapshot are created here
    and discarded with the session, never shared across sessions. Manual
    code and QR check-ins for the same clinic go through `check_in` so they
    share the cooldown with the face scanner.
    """

    def __init__(
        self,
        clinic_id: str,
        source_factory: Callable[[], VideoSource],
        extractor: DescriptorExtractor,
        registry: BiometricRegistry,
        coordinator: QueueCoordinator,
        notifier: Optional[CheckInNotifier] = None,
        interval: float = SCAN_INTERVAL_SECONDS,
        threshold: float = MATCH_THRESHOLD,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        admission_workers: int = ADMISSION_WORKERS,
        guidance_interval: float = GUIDANCE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
        index_factory: Callable[[list], IdentityIndex] = NearestIdentityMatcher,
        resolver: Optional[CheckInResolver] = None,
    ):
        self.clinic_id = clinic_id
        self.source_factory = source_factory
        self.extractor = extractor
        self.registry = registry
        self.coordinator = coordinator
        self.notifier = notifier or CheckInNotifier()
        self.interval = interval
        self.threshold = threshold
        self.admission_workers = admission_workers
        self.guidance_interval = max(0.01, float(guidance_interval))
        self.clock = clock
        self.index_factory = index_factory
        self.logger = setup_logger(self.__class__.__name__)

        self.cooldown = CooldownTracker(cooldown_seconds)
        self.profiles = ProfileCache(registry)
        self.pipeline = AdmissionPipeline(
            clinic_id=clinic_id,
            coordinator=coordinator,
            profiles=self.profiles,
            cooldown=self.cooldown,
            notifier=self.notifier,
            clock=clock,
        )
        self.resolver = resolver or CheckInResolver(registry, index_provider=self.current_index, threshold=threshold)

        self.banner: Optional[str] = None
        self.latest_faces: List[RecognizedFace] = []
        self.latest_guidance: Optional[GuidanceResult] = None
        self.scheduler: Optional[FrameScanScheduler] = None
        self._source: Optional[VideoSource] = None
        self._index: Optional[IdentityIndex] = None
        self._index_lock = threading.Lock()
        self._guidance_stop = threading.Event()
        self._guidance_thread: Optional[threading.Thread] = None

    def __enter__(self) -> "ScanSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self, run_loop: bool = True) -> None:
        if self.scheduler is not None:
            if run_loop and not self.scheduler.running:
                self._run_loops()
            return
        try:
            source = self.source_factory()
        except CameraPermissionError as exc:
            self.banner = str(exc)
            self.logger.error("Camera unavailable for clinic %s: %s", self.clinic_id, exc)
            raise

        try:
            self.refresh_templates()
            scheduler = FrameScanScheduler(
                source=source,
                extractor=self.extractor,
                index_provider=self.current_index,
                on_match=self.pipeline.handle_match,
                on_faces=self._on_faces,
                describe=self._describe,
                interval=self.interval,
                threshold=self.threshold,
                admission_workers=self.admission_workers,
            )
        except BaseException:
            source.close()
            raise

        self._source = source
        self.scheduler = scheduler
        if run_loop:
            self._run_loops()
        self.logger.info("Scan session started for clinic %s with %d templates", self.clinic_id, len(self.current_index()))

    def stop(self, wait_for_admissions: bool = True) -> None:
        if self.scheduler is None:
            return
        self._stop_guidance()
        self.scheduler.stop(wait_for_admissions=wait_for_admissions)
        self._source = None
        self.cooldown.clear()
        self.profiles.clear()
        with self._index_lock:
            self._index = None
        self.logger.info("Scan session stopped for clinic %s", self.clinic_id)

    def scan_now(self) -> Optional[ScanReport]:
        if self.scheduler is None:
            self.start(run_loop=False)
        return self.scheduler.tick()

    def check_in(self, value: Union[str, np.ndarray], modality: Union[Modality, str]) -> ManualCheckIn:
        resolution = self.resolver.resolve_with_strategy(value, modality)
        profile = self.resolver.profile_for(resolution)
        result = self.pipeline.admit_profile(profile)
        self.logger.info(
            "Manual check-in (%s) for %s at clinic %s -> %s",
            resolution.strategy,
            profile.identity_id,
            self.clinic_id,
            result.entry_id,
        )
        return ManualCheckIn(profile=profile, result=result, strategy=resolution.strategy)

    def update_guidance(self) -> Optional[GuidanceResult]:
        """Refresh the alignment hint from the current frame; never admits anyone."""
        source = self._source
        if source is None or not source.is_ready():
            return None
        try:
            frame = source.read()
        except CameraError as exc:
            self.logger.debug("Guidance frame unavailable: %s", exc)
            return None
        result = estimate_guidance(frame)
        self.latest_guidance = result
        return result

    def wait_for_admissions(self, timeout: Optional[float] = None) -> bool:
        if self.scheduler is None:
            return True
        return self.scheduler.wait_for_admissions(timeout)

    def refresh_templates(self) -> int:
        templates = self.registry.list_all_templates()
        index = self.index_factory(templates)
        with self._index_lock:
            self._index = index
        return len(templates)

    def current_index(self) -> IdentityIndex:
        with self._index_lock:
            index = self._index
        if index is None:
            self.refresh_templates()
            with self._index_lock:
                index = self._index
        return index

    def _run_loops(self) -> None:
        self.scheduler.start()
        if self._guidance_thread is None or not self._guidance_thread.is_alive():
            self._guidance_stop.clear()
            self._guidance_thread = threading.Thread(target=self._guidance_loop, name="frame-guidance", daemon=True)
            self._guidance_thread.start()

    def _stop_guidance(self) -> None:
        self._guidance_stop.set()
        if self._guidance_thread is not None:
            self._guidance_thread.join(timeout=5.0)
            self._guidance_thread = None

    def _guidance_loop(self) -> None:
        while not self._guidance_stop.is_set():
            try:
                self.update_guidance()
            except Exception:
                self.logger.exception("Guidance update failed")
            self._guidance_stop.wait(self.guidance_interval)

    def _on_faces(self, faces: List[RecognizedFace]) -> None:
        self.latest_faces = faces

    def _describe(self, identity_id: str) -> str:
        try:
            profile = self.profiles.get(identity_id)
        except RegistryUnavailable as exc:
            self.logger.warning("Profile lookup for %s failed: %s", identity_id, exc)
            return self.profiles.display_name(identity_id)
        return profile.display_name if profile else self.profiles.display_name(identity_id)


class SessionDirectory:
    """Running scan sessions keyed by clinic, so manual check-ins can find them."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ScanSession] = {}
        self._lock = threading.Lock()

    def register(self, session: ScanSession) -> None:
        with self._lock:
            self._sessions[session.clinic_id] = session

    def unregister(self, clinic_id: str) -> Optional[ScanSession]:
        with self._lock:
            return self._sessions.pop(clinic_id, None)

    def get(self, clinic_id: str) -> Optional[ScanSession]:
        with self._lock:
            return self._sessions.get(clinic_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def stop_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.stop()
