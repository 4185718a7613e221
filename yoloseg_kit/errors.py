"""
Exception types raised by yoloseg_kit.

Each failing call raises its own exception with a descriptive message; there is
no shared "last error" state, so independent sessions can fail independently.
"""


class YoloSegError(Exception):
    """Base class for every error raised by this package."""


class InvalidArgumentError(YoloSegError, ValueError):
    """A required buffer is missing, has the wrong shape, or a dimension is <= 0."""


class SessionClosedError(InvalidArgumentError):
    """The session handle was used after `close()`."""


class ResourceError(YoloSegError):
    """Model / label file missing or unreadable, runtime missing, allocation failed."""


class InferenceError(YoloSegError):
    """Unexpected failure inside an inference call, wrapped at the session boundary."""
