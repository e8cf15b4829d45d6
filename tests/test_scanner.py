import threading
import time

import numpy as np
import pytest

from clinic_checkin.camera import StillImageSource
from clinic_checkin.exceptions import CheckInError
from clinic_checkin.matcher import NearestIdentityMatcher
from clinic_checkin.scanner import FrameScanScheduler
from clinic_checkin.types import BiometricTemplate

from conftest import FakeExtractor, blank_frame, face

TEMPLATES = [
    BiometricTemplate("P1", np.zeros(3, dtype=np.float32)),
    BiometricTemplate("P2", np.full(3, 5.0, dtype=np.float32)),
]


class BlockingExtractor(FakeExtractor):
    def __init__(self, faces=None):
        super().__init__(faces)
        self.entered = threading.Event()
        self.release = threading.Event()

    def detect_faces(self, frame):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().detect_faces(frame)


class FlakyExtractor(FakeExtractor):
    def __init__(self, faces=None, failures=1):
        super().__init__(faces)
        self.failures = failures

    def detect_faces(self, frame):
        if self.failures:
            self.failures -= 1
            self.calls += 1
            raise RuntimeError("model hiccup")
        return super().detect_faces(frame)


def make_scheduler(extractor, source=None, **kwargs):
    matched = []
    scheduler = FrameScanScheduler(
        source=source or StillImageSource(blank_frame()),
        extractor=extractor,
        index_provider=lambda: NearestIdentityMatcher(TEMPLATES),
        on_match=matched.append,
        **kwargs,
    )
    return scheduler, matched


def test_tick_matches_every_known_face_once():
    extractor = FakeExtractor(
        [
            face([0.1, 0.0, 0.0], x=0),
            face([5.0, 5.0, 5.1], x=100),
            face([0.0, 0.1, 0.0], x=200),
            face([2.5, 2.5, 2.5], x=300),
        ]
    )
    scheduler, matched = make_scheduler(extractor, describe=lambda ident: f"name-{ident}")

    report = scheduler.tick()
    assert scheduler.wait_for_admissions(timeout=5)
    scheduler.stop()

    assert report.matched_ids == ["P1", "P2"]
    assert sorted(matched) == ["P1", "P2"]
    assert [item.identity_id for item in report.faces] == ["P1", "P2", "P1", None]
    assert report.faces[0].display_name == "name-P1"
    assert report.faces[3].display_name == "Unknown Visitor"


def test_no_faces_is_not_an_error():
    seen = []
    scheduler, matched = make_scheduler(FakeExtractor(), on_faces=seen.append)

    report = scheduler.tick()
    scheduler.stop()

    assert report.faces == []
    assert matched == []
    assert seen == [[]]
    assert scheduler.failed_scans == 0


def test_overlapping_tick_is_dropped():
    extractor = BlockingExtractor([face([0.0, 0.0, 0.0])])
    scheduler, _matched = make_scheduler(extractor)

    first = threading.Thread(target=scheduler.tick)
    first.start()
    assert extractor.entered.wait(timeout=5)

    assert scheduler.tick() is None
    assert scheduler.skipped_ticks == 1

    extractor.release.set()
    first.join(timeout=5)
    assert scheduler.scan_count == 1
    assert extractor.calls == 1
    scheduler.stop()


def test_failed_scan_is_logged_and_next_tick_runs():
    extractor = FlakyExtractor([face([0.0, 0.0, 0.0])])
    scheduler, matched = make_scheduler(extractor)

    assert scheduler.tick() is None
    assert scheduler.failed_scans == 1
    assert "model hiccup" in scheduler.last_error

    report = scheduler.tick()
    scheduler.wait_for_admissions(timeout=5)
    scheduler.stop()

    assert report.matched_ids == ["P1"]
    assert matched == ["P1"]


def test_failing_admission_does_not_break_scanning():
    def explode(identity_id):
        raise RuntimeError(f"queue down for {identity_id}")

    scheduler = FrameScanScheduler(
        source=StillImageSource(blank_frame()),
        extractor=FakeExtractor([face([0.0, 0.0, 0.0])]),
        index_provider=lambda: NearestIdentityMatcher(TEMPLATES),
        on_match=explode,
    )
    assert scheduler.tick() is not None
    assert scheduler.wait_for_admissions(timeout=5)
    assert scheduler.tick() is not None
    scheduler.stop()
    assert scheduler.failed_scans == 0


def test_source_not_ready_skips_extraction():
    extractor = FakeExtractor([face([0.0, 0.0, 0.0])])
    scheduler, _matched = make_scheduler(extractor, source=StillImageSource(blank_frame(), warmup_reads=1))

    assert scheduler.tick() is None
    assert scheduler.not_ready_ticks == 1
    assert extractor.calls == 0

    assert scheduler.tick() is not None
    assert extractor.calls == 1
    scheduler.stop()


def test_no_extraction_after_stop():
    extractor = FakeExtractor([face([0.0, 0.0, 0.0])])
    source = StillImageSource(blank_frame())
    scheduler, _matched = make_scheduler(extractor, source=source, interval=0.01)

    scheduler.start()
    deadline = time.monotonic() + 5
    while extractor.calls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop()

    calls = extractor.calls
    assert calls >= 1
    assert source.closed
    assert not scheduler.running

    time.sleep(0.05)
    assert scheduler.tick() is None
    assert extractor.calls == calls


def test_stop_is_idempotent_and_final():
    scheduler, _matched = make_scheduler(FakeExtractor())
    scheduler.stop()
    scheduler.stop()

    with pytest.raises(CheckInError):
        scheduler.start()


def test_loop_keeps_cadence_and_reports_faces():
    seen = []
    scheduler, _matched = make_scheduler(FakeExtractor([face([0.0, 0.0, 0.0])]), on_faces=seen.append, interval=0.01)

    scheduler.start()
    deadline = time.monotonic() + 5
    while len(seen) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop()

    assert len(seen) >= 3
    assert all(faces[0].identity_id == "P1" for faces in seen)
