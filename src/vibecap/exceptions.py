"""
Exception hierarchy for the VibeCap interview service.

All application exceptions inherit from VibeCapError.
"""


class VibeCapError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(VibeCapError):
    """Delivery to or from the message channel failed."""

    pass


class RateLimitError(TransportError):
    """The channel asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


# =============================================================================
# Session Errors
# =============================================================================


class SessionError(VibeCapError):
    """Session-related error."""

    pass


class SessionBusyError(SessionError):
    """Another message for the session (or any session, in single-worker mode) is in flight."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already being processed")
        self.session_id = session_id


class InvalidStateError(SessionError):
    """Stored conversation state could not be decoded."""

    pass


class StoreUnavailableError(SessionError):
    """The session or record store could not be read or written."""

    pass


# =============================================================================
# Composer Errors
# =============================================================================


class ComposerError(VibeCapError):
    """Text generation failed; callers fall back to templates."""

    pass
