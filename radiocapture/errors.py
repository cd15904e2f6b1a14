"""
Exception types for Radio Capture.

Capture failures are always contained to the occurrence that raised them.
The recorder catches these and reports them to the status log; nothing
here is meant to take the process down.
"""


class RadioCaptureError(Exception):
    """Base class for all Radio Capture errors."""


class ConfigError(RadioCaptureError):
    """Invalid static configuration (bad environment value)."""


# ========== Capture Errors ==========

class SourceConnectionError(RadioCaptureError, ConnectionError):
    """The source URL could not be reached or answered with a non-success status."""


class ProtocolError(RadioCaptureError):
    """A playlist document could not be parsed."""


class SegmentError(RadioCaptureError):
    """A single HLS segment could not be fetched."""


class StorageError(RadioCaptureError):
    """Delivery to the persistence sink failed."""


class EmptyCaptureError(RadioCaptureError):
    """The deadline was reached without any audio bytes captured."""


# ========== Registry Errors ==========

class JobValidationError(RadioCaptureError, ValueError):
    """A job definition is missing fields or has malformed values."""


class JobNotFoundError(RadioCaptureError, KeyError):
    """No job with the requested id exists."""

    def __str__(self) -> str:
        return f"Job not found: {self.args[0] if self.args else ''}"


class JobLockedError(RadioCaptureError, PermissionError):
    """A system-managed job was modified by a non-system caller."""
