"""Audio capture backends."""

from .recorder import (
    AudioCapture,
    CaptureEngine,
    CaptureError,
    CaptureStartError,
    CaptureState,
    PermissionDeniedError,
    PermissionProvider,
    PermissionStatus,
)

__all__ = [
    "AudioCapture",
    "CaptureEngine",
    "CaptureError",
    "CaptureStartError",
    "CaptureState",
    "PermissionDeniedError",
    "PermissionProvider",
    "PermissionStatus",
]
