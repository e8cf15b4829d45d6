import argparse
import sys
import time

import uvicorn

from clinic_checkin.camera import CameraStream
from clinic_checkin.config import CAMERA_INDEX, DATABASE_URL, ENROLLMENT_SAMPLES, MATCH_THRESHOLD, SCAN_INTERVAL_SECONDS
from clinic_checkin.coordinator import QueueCoordinator
from clinic_checkin.database import Database
from clinic_checkin.exceptions import CheckInError
from clinic_checkin.logger import setup_logger
from clinic_checkin.queue_store import QueueStore
from clinic_checkin.registry import BiometricRegistry
from clinic_checkin.resolver import CheckInResolver
from clinic_checkin.types import Modality, QueueStatus


def _open_camera(camera_index: int) -> CameraStream:
    stream = CameraStream(camera_index)
    stream.open()
    return stream


def _serve_with_scanner(args) -> int:
    from clinic_checkin.api.app import create_app
    from clinic_checkin.face_engine import FaceEngine
    from clinic_checkin.session import ScanSession

    app = create_app()
    services = app.state.services
    session = ScanSession(
        clinic_id=args.scan_clinic,
        source_factory=lambda: _open_camera(args.camera),
        extractor=FaceEngine(),
        registry=services.registry,
        coordinator=services.coordinator,
    )
    session.start()
    # Manual check-ins for this clinic now share the scanner's cooldown.
    services.sessions.register(session)
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    finally:
        services.sessions.unregister(args.scan_clinic)
        session.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Clinic check-in: enrollment, live face scanning and queue API")
    parser.add_argument("--database-url", default=DATABASE_URL, help="SQLAlchemy database URL")

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Enroll or update a patient face template")
    enroll.add_argument("--id", required=True, dest="identity_id", help="Patient identity id")
    enroll.add_argument("--name", required=True, help="Display name")
    enroll.add_argument("--code", default=None, help="Short code (generated when omitted)")
    enroll.add_argument("--samples", type=int, default=ENROLLMENT_SAMPLES, help="Number of face samples")
    enroll.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    scan = subparsers.add_parser("scan", help="Run the live face check-in scanner for a clinic")
    scan.add_argument("--clinic", required=True, help="Clinic id")
    scan.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    scan.add_argument("--threshold", type=float, default=MATCH_THRESHOLD, help="Euclidean match threshold")
    scan.add_argument("--interval", type=float, default=SCAN_INTERVAL_SECONDS, help="Seconds between scans")

    serve = subparsers.add_parser("serve", help="Launch the check-in HTTP/WebSocket API")
    serve.add_argument("--host", default="0.0.0.0", help="Host interface")
    serve.add_argument("--port", type=int, default=8000, help="Port")
    serve.add_argument("--scan-clinic", default=None, help="Also run the face scanner for this clinic")
    serve.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index for --scan-clinic")

    qr = subparsers.add_parser("qr", help="Check a patient in from a QR code")
    qr.add_argument("--clinic", required=True, help="Clinic id")
    qr.add_argument("--image", default=None, help="Image file holding the QR code (camera when omitted)")
    qr.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    qr.add_argument("--max-frames", type=int, default=150, help="Frames to try before giving up")

    list_cmd = subparsers.add_parser("list-patients", help="List enrolled patients")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    queue = subparsers.add_parser("queue", help="Print the active queue of a clinic")
    queue.add_argument("--clinic", required=True, help="Clinic id")

    status = subparsers.add_parser("status", help="Move a queue entry to a new status")
    status.add_argument("entry_id", help="Queue entry id")
    status.add_argument("status", choices=[item.value for item in QueueStatus], help="New status")
    status.add_argument("--notes", default=None, help="Consultation notes")

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "serve":
            if args.scan_clinic is None:
                uvicorn.run("clinic_checkin.api.main:app", host=args.host, port=args.port, log_level="info")
                return 0
            return _serve_with_scanner(args)

        db = Database(args.database_url)
        registry = BiometricRegistry(db)

        if args.command == "enroll":
            from clinic_checkin.enrollment import EnrollmentService
            from clinic_checkin.face_engine import FaceEngine

            service = EnrollmentService(registry=registry, extractor=FaceEngine())
            with CameraStream(args.camera) as source:
                profile = service.enroll_from_source(
                    identity_id=args.identity_id,
                    display_name=args.name,
                    source=source,
                    target_samples=args.samples,
                    short_code=args.code,
                    on_status=lambda message, count: print(f"\r{message:<40}", end="", flush=True),
                )
            print(f"\nEnrolled {profile.display_name} ({profile.identity_id}) with code {profile.short_code}.")
            return 0

        if args.command == "scan":
            from clinic_checkin.face_engine import FaceEngine
            from clinic_checkin.session import ScanSession

            coordinator = QueueCoordinator(QueueStore(db))
            session = ScanSession(
                clinic_id=args.clinic,
                source_factory=lambda: _open_camera(args.camera),
                extractor=FaceEngine(),
                registry=registry,
                coordinator=coordinator,
                interval=args.interval,
                threshold=args.threshold,
            )
            session.notifier.add_listener(
                lambda event: print(f"Checked in: {event.display_name} ({event.identity_id}) -> {event.entry_id}")
            )
            with session:
                print(f"Scanning for clinic {args.clinic}. Press Ctrl+C to stop.")
                while True:
                    time.sleep(1.0)

        if args.command == "qr":
            from clinic_checkin.qr import decode_image, decode_qr, read_qr_from_source

            if args.image:
                with open(args.image, "rb") as handle:
                    payload = decode_qr(decode_image(handle.read()))
            else:
                with CameraStream(args.camera) as source:
                    print("Hold the QR code up to the camera...")
                    payload = read_qr_from_source(source, max_frames=args.max_frames)
            if not payload:
                print("No QR code found.")
                return 1

            profile = CheckInResolver(registry).resolve_profile(payload, Modality.QR)
            result = QueueCoordinator(QueueStore(db)).admit(
                args.clinic, profile.identity_id, profile.display_name, profile.short_code
            )
            state = "Checked in" if result.created else "Already waiting"
            print(f"{state}: {profile.display_name} ({profile.identity_id}) -> {result.entry_id}")
            return 0

        if args.command == "list-patients":
            profiles = registry.list_profiles(limit=args.limit)
            if not profiles:
                print("No patients enrolled.")
                return 0

            print(f"{'Identity ID':<24} {'Code':<8} {'Name'}")
            print("-" * 60)
            for profile in profiles:
                print(f"{profile.identity_id:<24} {profile.short_code:<8} {profile.display_name}")
            return 0

        if args.command == "queue":
            entries = QueueCoordinator(QueueStore(db)).active_entries(args.clinic)
            if not entries:
                print(f"Queue for {args.clinic} is empty.")
                return 0

            print(f"{'#':<4} {'Checked in':<20} {'Status':<12} {'Code':<8} {'Name'}")
            print("-" * 72)
            for position, entry in enumerate(entries, start=1):
                stamp = entry.check_in_time.strftime("%Y-%m-%d %H:%M:%S")
                print(f"{position:<4} {stamp:<20} {entry.status.value:<12} {entry.short_code:<8} {entry.display_name}")
            return 0

        if args.command == "status":
            entry = QueueCoordinator(QueueStore(db)).update_status(args.entry_id, args.status, args.notes)
            print(f"Entry {entry.id} is now {entry.status.value}.")
            return 0

    except CheckInError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
