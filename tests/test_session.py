import threading
import time

import numpy as np
import pytest

from clinic_checkin.admission import AdmissionPipeline, ProfileCache
from clinic_checkin.camera import StillImageSource
from clinic_checkin.cooldown import CooldownTracker
from clinic_checkin.exceptions import CameraPermissionError, QueueStoreUnavailable, RegistryUnavailable
from clinic_checkin.notifications import CheckInNotifier
from clinic_checkin.session import ScanSession
from clinic_checkin.types import CheckInResult, PatientProfile, QueueStatus

from conftest import FakeClock, FakeExtractor, SpyRegistry, blank_frame, face

DIM = 8


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def enrolled(registry):
    registry.enroll("P1", "Ada Lovelace", embedding=np.zeros(DIM, dtype=np.float32), short_code="ADA001")
    return registry


def build_session(registry, coordinator, clock, extractor, source=None, **kwargs):
    notifier = CheckInNotifier(clock=clock)
    return ScanSession(
        clinic_id="clinic-a",
        source_factory=lambda: source or StillImageSource(blank_frame()),
        extractor=extractor,
        registry=registry,
        coordinator=coordinator,
        notifier=notifier,
        clock=clock,
        **kwargs,
    )


def scan(session):
    report = session.scan_now()
    assert session.wait_for_admissions(timeout=5)
    return report


def test_biometric_auto_check_in_respects_cooldown_and_queue(enrolled, coordinator, clock):
    sighted = np.zeros(DIM, dtype=np.float32)
    sighted[0] = 0.3
    session = build_session(enrolled, coordinator, clock, FakeExtractor([face(sighted)]))
    events = []
    session.notifier.add_listener(events.append)

    scan(session)
    entries = coordinator.active_entries("clinic-a")
    assert len(entries) == 1
    assert entries[0].identity_id == "P1"
    assert entries[0].status is QueueStatus.WAITING
    assert entries[0].display_name == "Ada Lovelace"
    assert entries[0].short_code == "ADA001"
    assert [event.created for event in events] == [True]

    clock.advance(5)
    scan(session)
    assert len(coordinator.active_entries("clinic-a")) == 1
    assert len(events) == 1

    clock.advance(30)
    scan(session)
    entries_later = coordinator.active_entries("clinic-a")
    assert [entry.id for entry in entries_later] == [entries[0].id]
    assert [event.created for event in events] == [True, False]

    session.stop()


def test_completed_patient_is_readmitted_after_cooldown(enrolled, coordinator, clock):
    session = build_session(enrolled, coordinator, clock, FakeExtractor([face(np.zeros(DIM))]))

    scan(session)
    first = coordinator.active_entries("clinic-a")[0]
    coordinator.complete(first.id)

    clock.advance(31)
    scan(session)
    second = coordinator.active_entries("clinic-a")
    assert len(second) == 1
    assert second[0].id != first.id
    session.stop()


def test_unknown_face_is_reported_but_not_admitted(enrolled, coordinator, clock):
    session = build_session(enrolled, coordinator, clock, FakeExtractor([face(np.ones(DIM))]))

    report = scan(session)
    assert report.matched_ids == []
    assert session.latest_faces[0].display_name == "Unknown Visitor"
    assert coordinator.active_entries("clinic-a") == []
    session.stop()


def test_session_state_is_discarded_on_stop(enrolled, coordinator, clock):
    session = build_session(enrolled, coordinator, clock, FakeExtractor([face(np.zeros(DIM))]))
    scan(session)
    assert len(session.cooldown) == 1
    assert len(session.current_index()) == 1

    session.stop()
    assert len(session.cooldown) == 0
    assert session.profiles.display_name("P1") == "Patient"


def test_new_enrollment_needs_template_refresh(enrolled, coordinator, clock):
    sighted = np.full(DIM, 3.0, dtype=np.float32)
    session = build_session(enrolled, coordinator, clock, FakeExtractor([face(sighted)]))

    assert scan(session).matched_ids == []

    enrolled.enroll("P2", "Ben", embedding=sighted, short_code="BEN002")
    assert scan(session).matched_ids == []

    assert session.refresh_templates() == 2
    assert scan(session).matched_ids == ["P2"]
    session.stop()


def test_camera_permission_failure_sets_banner(enrolled, coordinator, clock):
    def deny():
        raise CameraPermissionError("Camera 0 could not be opened. Check camera permissions.")

    session = ScanSession(
        clinic_id="clinic-a",
        source_factory=deny,
        extractor=FakeExtractor(),
        registry=enrolled,
        coordinator=coordinator,
        clock=clock,
    )
    with pytest.raises(CameraPermissionError):
        session.start()
    assert "permissions" in session.banner


class BrokenCoordinator:
    def __init__(self):
        self.calls = 0

    def admit(self, clinic_id, identity_id, display_name, short_code):
        self.calls += 1
        raise QueueStoreUnavailable("store offline")


def test_failed_admission_is_retried_on_next_sighting(clock):
    coordinator = BrokenCoordinator()
    cooldown = CooldownTracker(30.0)
    pipeline = AdmissionPipeline(
        clinic_id="clinic-a",
        coordinator=coordinator,
        profiles=ProfileCache(SpyRegistry()),
        cooldown=cooldown,
        clock=clock,
    )

    assert pipeline.handle_match("P1") is None
    clock.advance(1.5)
    assert pipeline.handle_match("P1") is None
    assert coordinator.calls == 2
    assert len(cooldown) == 0


def test_missing_profile_uses_placeholder_names(coordinator, clock):
    pipeline = AdmissionPipeline(
        clinic_id="clinic-a",
        coordinator=coordinator,
        profiles=ProfileCache(SpyRegistry()),
        cooldown=CooldownTracker(30.0),
        clock=clock,
    )
    event = pipeline.handle_match("ghost")
    entry = coordinator.get_entry(event.entry_id)

    assert event.display_name == "Patient"
    assert entry.short_code == "FACE-ID"


def test_profile_cache_hits_registry_once():
    spy = SpyRegistry([PatientProfile("P1", "Ada", "ADA001")])
    cache = ProfileCache(spy)

    cache.get("P1")
    cache.get("P1")
    cache.get("nobody")
    cache.get("nobody")

    assert spy.calls == [("get_profile", "P1"), ("get_profile", "nobody"), ("get_profile", "nobody")]


class CountingCoordinator:
    """Passes through to a real coordinator and remembers who was admitted."""

    def __init__(self, inner):
        self.inner = inner
        self.admitted = []

    def admit(self, clinic_id, identity_id, display_name, short_code):
        self.admitted.append(identity_id)
        return self.inner.admit(clinic_id, identity_id, display_name, short_code)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class SlowCoordinator:
    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def admit(self, clinic_id, identity_id, display_name, short_code):
        with self._lock:
            self.calls += 1
        time.sleep(0.05)
        return CheckInResult(entry_id="entry-1", created=True)


def skin_frame():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    frame[:, :] = (120, 150, 200)
    return frame


def test_registry_outage_on_start_releases_the_camera(enrolled, coordinator, clock, monkeypatch):
    def offline():
        raise RegistryUnavailable("registry offline")

    monkeypatch.setattr(enrolled, "list_all_templates", offline)
    source = StillImageSource(blank_frame())
    session = build_session(enrolled, coordinator, clock, FakeExtractor(), source=source)

    with pytest.raises(RegistryUnavailable):
        session.start()

    assert source.closed
    assert session.scheduler is None


def test_code_check_in_starts_face_cooldown(enrolled, coordinator, clock):
    counting = CountingCoordinator(coordinator)
    session = build_session(enrolled, counting, clock, FakeExtractor([face(np.zeros(DIM))]))

    manual = session.check_in("ada001", "code")
    assert manual.strategy == "code"
    assert manual.result.created is True
    assert manual.profile.identity_id == "P1"
    assert counting.admitted == ["P1"]

    clock.advance(10)
    assert scan(session).matched_ids == ["P1"]
    assert counting.admitted == ["P1"]

    clock.advance(25)
    scan(session)
    assert counting.admitted == ["P1", "P1"]
    assert len(coordinator.active_entries("clinic-a")) == 1
    session.stop()


def test_qr_check_in_through_session_shares_cooldown(enrolled, coordinator, clock):
    counting = CountingCoordinator(coordinator)
    session = build_session(enrolled, counting, clock, FakeExtractor([face(np.zeros(DIM))]))

    manual = session.check_in("https://clinic.example/patients/P1", "qr")
    assert manual.strategy == "url-path"

    scan(session)
    assert counting.admitted == ["P1"]
    assert not session.cooldown.should_admit("P1", clock())
    session.stop()


def test_failed_manual_check_in_leaves_cooldown_untouched(enrolled, clock):
    session = build_session(enrolled, BrokenCoordinator(), clock, FakeExtractor())

    with pytest.raises(QueueStoreUnavailable):
        session.check_in("ADA001", "code")
    assert len(session.cooldown) == 0


def test_guidance_reads_frames_without_admitting(enrolled, coordinator, clock):
    extractor = FakeExtractor()
    session = build_session(enrolled, coordinator, clock, extractor, source=StillImageSource(skin_frame()))
    assert session.update_guidance() is None

    session.start(run_loop=False)
    result = session.update_guidance()

    assert result.face_likely
    assert session.latest_guidance is result
    assert extractor.calls == 0
    assert coordinator.active_entries("clinic-a") == []
    session.stop()


def test_guidance_loop_runs_while_session_is_live(enrolled, coordinator, clock):
    session = build_session(
        enrolled,
        coordinator,
        clock,
        FakeExtractor(),
        source=StillImageSource(skin_frame()),
        interval=60.0,
        guidance_interval=0.01,
    )

    with session:
        deadline = time.monotonic() + 5
        while session.latest_guidance is None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert session.latest_guidance is not None
        assert session.latest_guidance.face_likely

    assert session._guidance_thread is None
    assert coordinator.active_entries("clinic-a") == []


def test_overlapping_sightings_reach_the_queue_once(clock):
    coordinator = SlowCoordinator()
    pipeline = AdmissionPipeline(
        clinic_id="clinic-a",
        coordinator=coordinator,
        profiles=ProfileCache(SpyRegistry()),
        cooldown=CooldownTracker(30.0),
        clock=clock,
    )
    barrier = threading.Barrier(6)
    events = []

    def sighting():
        barrier.wait()
        events.append(pipeline.handle_match("P1"))

    threads = [threading.Thread(target=sighting) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert coordinator.calls == 1
    assert len([event for event in events if event is not None]) == 1
