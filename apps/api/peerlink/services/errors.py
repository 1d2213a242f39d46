"""Failure taxonomy for peer sessions."""
from __future__ import annotations


class PeerlinkError(RuntimeError):
    """Base class for session-level failures."""


class RendezvousFull(PeerlinkError):
    """Raised when every room we tried already held two participants."""

    def __init__(self, room: str) -> None:
        super().__init__(f"Room {room} is full")
        self.room = room


class MediaAcquisitionFailure(PeerlinkError):
    """Local capture device could not be opened or permission was denied."""


class NegotiationStepFailure(PeerlinkError):
    """A description or candidate step was rejected by the media transport."""

    def __init__(self, step: str, cause: BaseException | None = None) -> None:
        message = f"Negotiation step {step!r} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.step = step


class NegotiationTimeout(PeerlinkError):
    """The offer/answer handshake did not complete in time."""


class ChannelFailure(PeerlinkError):
    """The relay connection was lost or could not be used."""
