class CheckInError(Exception):
    """Base exception for the check-in pipeline."""


class CameraError(CheckInError):
    """Raised when the video source cannot deliver frames."""


class CameraPermissionError(CameraError):
    """Raised when the camera device cannot be opened at all.

    Operators must see this as a persistent banner rather than a silently
    disabled scanner.
    """


class FaceEngineError(CheckInError):
    """Raised when face detection or embedding generation fails."""


class DimensionMismatchError(CheckInError):
    """Raised when an embedding does not share the registry's dimensionality."""


class NoMatchFound(CheckInError):
    """A valid face was found but no enrolled identity is close enough."""


class AmbiguousCheckInInput(CheckInError):
    """Raised when a manual code or QR payload resolves to no identity."""

    def __init__(self, searched: str, reason: str = "No patient matches"):
        self.searched = searched
        super().__init__(f"{reason}: '{searched}'")


class RegistryUnavailable(CheckInError):
    """Raised when the biometric registry or profile lookup fails."""


class QueueStoreUnavailable(CheckInError):
    """Raised when the queue store cannot be read or written."""


class OrderingUnavailable(QueueStoreUnavailable):
    """Raised when the store cannot serve a query sorted by check-in time."""


class QueueEntryNotFound(CheckInError):
    """Raised when a queue entry id does not exist."""


class InvalidStatusTransition(CheckInError):
    """Raised when a queue entry is moved backwards or out of a terminal state."""

    def __init__(self, entry_id: str, current: str, requested: str):
        self.entry_id = entry_id
        self.current = current
        self.requested = requested
        super().__init__(f"Queue entry {entry_id} cannot move from '{current}' to '{requested}'.")


class NoFaceDetected(CheckInError):
    """Raised when an uploaded photo holds no usable face."""
