"""
Exception taxonomy for the relay.

Caller-facing operations raise these; the HTTP layer maps them to status
codes. Failures inside a running session (crash, reconnect) are never
raised to callers, they only show up as state and log changes.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class SessionValidationError(RelayError, ValueError):
    """Request parameters were rejected before anything was started."""


class SessionNotFoundError(RelayError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotActiveError(RelayError):
    def __init__(self, session_id: str):
        super().__init__(f"Session is not active: {session_id}")
        self.session_id = session_id


class MediaNotFoundError(RelayError, FileNotFoundError):
    """An input, playlist entry or catalog file does not exist."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(message or f"Media file not found: {path}")
        self.path = path


class EncoderUnavailableError(RelayError):
    """The encoder binary is not installed or cannot be executed."""


class EncoderStartError(RelayError):
    """The encoder did not confirm its start."""


class SessionStoreError(RelayError):
    """A durable session record could not be written."""


class MediaConversionError(RelayError):
    """A one-shot encoder job (default image, loop clip) failed."""
