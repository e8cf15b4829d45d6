from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Protocol, Set

import numpy as np

from .camera import VideoSource
from .config import ADMISSION_WORKERS, MATCH_THRESHOLD, SCAN_INTERVAL_SECONDS, UNKNOWN_DISPLAY_NAME
from .exceptions import CheckInError
from .logger import setup_logger
from .matcher import IdentityIndex
from .types import DetectedFace, RecognizedFace, ScanReport


class DescriptorExtractor(Protocol):
    """Finds faces in a frame and describes each with a fixed-length embedding."""

    def detect_faces(self, frame: np.ndarray) -> List[DetectedFace]:
        ...


class FrameScanScheduler:
    """Fixed-cadence extract-and-match loop over one video source.

    At most one scan runs at a time. When the cadence fires while a scan is
    still running the tick is dropped. Matches are handed to `on_match` on a
    worker pool so a slow check-in never delays the next tick. A failing
    cycle is logged and the loop carries on.
    """

    def __init__(
        self,
        source: VideoSource,
        extractor: DescriptorExtractor,
        index_provider: Callable[[], IdentityIndex],
        on_match: Callable[[str], object],
        on_faces: Optional[Callable[[List[RecognizedFace]], None]] = None,
        describe: Optional[Callable[[str], str]] = None,
        interval: float = SCAN_INTERVAL_SECONDS,
        threshold: float = MATCH_THRESHOLD,
        admission_workers: int = ADMISSION_WORKERS,
        stop_timeout: float = 10.0,
    ):
        self.source = source
        self.extractor = extractor
        self.index_provider = index_provider
        self.on_match = on_match
        self.on_faces = on_faces
        self.describe = describe or (lambda _identity_id: UNKNOWN_DISPLAY_NAME)
        self.interval = max(0.01, float(interval))
        self.threshold = threshold
        self.stop_timeout = stop_timeout
        self.logger = setup_logger(self.__class__.__name__)

        self.scan_count = 0
        self.skipped_ticks = 0
        self.not_ready_ticks = 0
        self.failed_scans = 0
        self.last_error: Optional[str] = None

        self._scan_guard = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._admissions = ThreadPoolExecutor(
            max_workers=max(1, int(admission_workers)),
            thread_name_prefix="checkin-admission",
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._closed = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self._stop_event.is_set():
            raise CheckInError("Scan scheduler was stopped; create a new session to scan again.")
        if self.running:
            return
        self._thread = threading.Thread(target=self._run_loop, name="frame-scan", daemon=True)
        self._thread.start()
        self.logger.info("Frame scan started (every %.2fs)", self.interval)

    def stop(self, wait_for_admissions: bool = True) -> None:
        """Halt the cadence, let an in-flight scan finish, then release the source.

        Admissions already handed off are never cancelled; with
        `wait_for_admissions=False` they finish in the background.
        """
        if self._closed:
            return
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.stop_timeout)

        acquired = self._scan_guard.acquire(timeout=self.stop_timeout)
        try:
            self.source.close()
        finally:
            if acquired:
                self._scan_guard.release()

        self._admissions.shutdown(wait=wait_for_admissions, cancel_futures=False)
        self._closed = True
        self.logger.info(
            "Frame scan stopped after %d scans (%d skipped, %d failed)",
            self.scan_count,
            self.skipped_ticks,
            self.failed_scans,
        )

    def tick(self) -> Optional[ScanReport]:
        """Run one scan in the calling thread unless one is already in flight."""
        if not self._scan_guard.acquire(blocking=False):
            self._count("skipped_ticks")
            return None
        return self._run_acquired()

    def wait_for_admissions(self, timeout: Optional[float] = None) -> bool:
        with self._pending_lock:
            pending = list(self._pending)
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._fire()
            self._stop_event.wait(self.interval)

    def _fire(self) -> None:
        if not self._scan_guard.acquire(blocking=False):
            self._count("skipped_ticks")
            return
        worker = threading.Thread(target=self._run_acquired, name="frame-scan-cycle", daemon=True)
        worker.start()

    def _run_acquired(self) -> Optional[ScanReport]:
        try:
            if self._stop_event.is_set():
                return None
            if not self.source.is_ready():
                self._count("not_ready_ticks")
                return None
            report = self._scan_once()
            self._count("scan_count")
            return report
        except Exception as exc:
            with self._stats_lock:
                self.failed_scans += 1
                self.last_error = str(exc)
            self.logger.exception("Scan cycle failed; retrying on next tick")
            return None
        finally:
            self._scan_guard.release()

    def _scan_once(self) -> ScanReport:
        frame = self.source.read()
        faces = self.extractor.detect_faces(frame)
        report = ScanReport()

        if faces:
            index = self.index_provider()
            for face in faces:
                result = index.match(face.embedding, self.threshold)
                if result.identity_id is None:
                    report.faces.append(RecognizedFace.unknown(face.box, result.distance))
                    continue
                report.faces.append(
                    RecognizedFace(
                        identity_id=result.identity_id,
                        display_name=self.describe(result.identity_id),
                        box=face.box,
                        distance=result.distance,
                    )
                )
                if result.identity_id not in report.matched_ids:
                    report.matched_ids.append(result.identity_id)

        if self.on_faces is not None:
            self.on_faces(report.faces)
        for identity_id in report.matched_ids:
            self._dispatch(identity_id)
        return report

    def _dispatch(self, identity_id: str) -> None:
        future = self._admissions.submit(self.on_match, identity_id)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(lambda fut, ident=identity_id: self._finish(fut, ident))

    def _finish(self, future: Future, identity_id: str) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("Admission hand-off for %s failed: %s", identity_id, exc)

    def _count(self, name: str) -> None:
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + 1)
