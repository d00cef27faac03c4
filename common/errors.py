"""Error taxonomy shared by capture and recognition.

Every error carries a stable `code` used on the wire.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from common.schemas import AudioSegment


class RecognitionError(Exception):
    code = "unknown"


class PermissionDenied(RecognitionError):
    code = "permission_denied"

    def __init__(self, message: str = "Microphone access was not granted"):
        super().__init__(message)


class ConfigurationError(RecognitionError):
    code = "configuration_error"


class AlreadyRecording(RecognitionError):
    code = "already_recording"

    def __init__(self, message: str = "Capture is already active"):
        super().__init__(message)


class CaptureHardwareError(RecognitionError):
    """Device busy, codec failure or any other recorder fault."""

    code = "capture_failed"


class DurationOutOfBounds(RecognitionError):
    code = "duration_out_of_bounds"

    def __init__(self, segment: "AudioSegment", limit_ms: int, message: str = ""):
        self.segment = segment
        self.limit_ms = limit_ms
        super().__init__(
            message
            or f"Segment {segment.sequence_index} duration {segment.duration_ms}ms outside bound {limit_ms}ms"
        )


class SegmentTooShort(DurationOutOfBounds):
    code = "segment_too_short"


class SegmentTooLong(DurationOutOfBounds):
    code = "segment_too_long"


class ClassificationUnavailable(RecognitionError):
    code = "classification_unavailable"

    def __init__(self, reason: str = "", cause: Optional[BaseException] = None):
        self.reason = reason
        self.cause = cause
        super().__init__(f"Classification unavailable: {reason}" if reason else "Classification unavailable")


class RecognitionTimeout(RecognitionError):
    code = "timeout"

    def __init__(self, operation: str, timeout_s: float):
        self.operation = operation
        self.timeout_s = timeout_s
        super().__init__(f"{operation} exceeded {timeout_s:.1f}s")
