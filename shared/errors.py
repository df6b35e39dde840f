"""Error taxonomy for the live session core."""
from __future__ import annotations


class LiveSessionError(Exception):
    """Base class; ``code`` is what transports put on the wire."""

    code = "session_error"
    retryable = False


class InvalidState(LiveSessionError):
    """Transition attempted from the wrong or a terminal status."""

    code = "invalid_state"


class Forbidden(LiveSessionError):
    """Caller's role or identity does not own the requested action."""

    code = "forbidden"


class InsufficientFunds(LiveSessionError):
    """A debit would drive the balance negative."""

    code = "insufficient_funds"


class ChannelUnavailable(LiveSessionError):
    """Signaling or data channel is not open."""

    code = "channel_unavailable"
    retryable = True


class MalformedMessage(LiveSessionError):
    """Undecodable chat or signaling payload."""

    code = "malformed_message"


class SessionNotFound(LiveSessionError):
    code = "not_found"
