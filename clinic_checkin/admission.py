from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional

from .config import DEFAULT_DISPLAY_NAME, FACE_SHORT_CODE
from .coordinator import QueueCoordinator
from .cooldown import CooldownTracker
from .exceptions import QueueStoreUnavailable, RegistryUnavailable
from .logger import setup_logger
from .notifications import CheckInNotifier, new_event
from .resolver import ProfileLookup
from .types import AutoCheckInEvent, CheckInResult, PatientProfile


class ProfileCache:
    """Session-scoped memo of profile lookups; misses are not cached."""

    def __init__(self, registry: ProfileLookup):
        self.registry = registry
        self._profiles: Dict[str, PatientProfile] = {}
        self._lock = threading.Lock()

    def get(self, identity_id: str) -> Optional[PatientProfile]:
        with self._lock:
            cached = self._profiles.get(identity_id)
        if cached is not None:
            return cached
        profile = self.registry.get_profile(identity_id)
        if profile is not None:
            with self._lock:
                self._profiles[identity_id] = profile
        return profile

    def display_name(self, identity_id: str) -> str:
        with self._lock:
            cached = self._profiles.get(identity_id)
        return cached.display_name if cached is not None else DEFAULT_DISPLAY_NAME

    def clear(self) -> None:
        with self._lock:
            self._profiles.clear()


class AdmissionPipeline:
    """Cooldown gate in front of `QueueCoordinator.admit` for face matches.

    The cooldown window is reserved before the queue is called and given back
    when the admission fails, so a registry or store outage is retried on a
    later scan and overlapping sightings reach the queue once.
    """

    def __init__(
        self,
        clinic_id: str,
        coordinator: QueueCoordinator,
        profiles: ProfileCache,
        cooldown: CooldownTracker,
        notifier: Optional[CheckInNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.clinic_id = clinic_id
        self.coordinator = coordinator
        self.profiles = profiles
        self.cooldown = cooldown
        self.notifier = notifier
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

    def handle_match(self, identity_id: str) -> Optional[AutoCheckInEvent]:
        now = self.clock()
        if not self.cooldown.try_reserve(identity_id, now):
            return None

        try:
            profile = self.profiles.get(identity_id)
            name = profile.display_name if profile else DEFAULT_DISPLAY_NAME
            code = profile.short_code if profile and profile.short_code else FACE_SHORT_CODE
            result = self.coordinator.admit(self.clinic_id, identity_id, name, code)
        except (RegistryUnavailable, QueueStoreUnavailable) as exc:
            self.cooldown.release(identity_id, now)
            self.logger.warning("Auto check-in for %s skipped this scan: %s", identity_id, exc)
            return None
        except Exception:
            self.cooldown.release(identity_id, now)
            raise

        event = new_event(identity_id, name, result.entry_id, now, created=result.created)
        if result.created:
            self.logger.info("Auto check-in: %s (%s) -> %s", name, identity_id, result.entry_id)
        if self.notifier is not None:
            self.notifier.publish(event)
        return event

    def admit_profile(self, profile: PatientProfile) -> CheckInResult:
        """Admit a patient identified by code or QR and start their face cooldown."""
        now = self.clock()
        result = self.coordinator.admit(self.clinic_id, profile.identity_id, profile.display_name, profile.short_code)
        self.cooldown.record_admission(profile.identity_id, now)
        return result
