"""Exception hierarchy for market_copilot.

Run failures carry a ``kind`` so the session can report them without
inspecting message text:

    network     transport error talking to the backend
    status      non-success HTTP status
    queued      backend accepted the keyword for background processing
    malformed   terminal payload missing required identifiers
    protocol    stream ended without exactly one ``complete`` record
    stream_error  backend sent an ``error`` record
"""

from __future__ import annotations


class CopilotError(Exception):
    """Base exception for market_copilot."""


class RunFailed(CopilotError):
    """A run submission ended without a committed result."""

    def __init__(self, message: str, kind: str = "status", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code


class ProtocolViolation(RunFailed):
    """The result stream broke its framing contract."""

    def __init__(self, message: str):
        super().__init__(message, kind="protocol")


class StreamErrorRecord(RunFailed):
    """The backend sent an ``error`` record mid-stream."""

    def __init__(self, message: str):
        super().__init__(message, kind="stream_error")


class RetryLater(CopilotError):
    """Backend asked the client to resubmit after a delay."""


class TurnInFlightError(CopilotError):
    """A chat turn was sent while another one is still in flight."""
