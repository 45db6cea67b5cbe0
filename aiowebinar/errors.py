"""Exceptions raised by the webinar playback engine."""

from __future__ import annotations


class WebinarError(Exception):
    """Base class for all aiowebinar errors."""


class AccessError(WebinarError):
    """The access endpoint refused to admit the viewer."""

    user_message = "Could not load webinar"
    retryable = True

    def __init__(self, detail: str | None = None) -> None:
        """Create the error with the server supplied detail, if any."""
        super().__init__(detail or self.user_message)
        self.detail = detail


class AccessDeniedError(AccessError):
    """Generic access failure (invalid token, unknown webinar, server error)."""

    user_message = "Access denied"
    retryable = True


class SessionEndedError(AccessError):
    """The live session is over, a replay may become available later."""

    user_message = "This live session has ended. A replay will be available soon."
    retryable = True


class ReplayExpiredError(AccessError):
    """The replay window of the webinar has closed."""

    user_message = "The replay for this webinar is no longer available."
    retryable = False


class ReplayDisabledError(AccessError):
    """Replays are not offered for this webinar."""

    user_message = "Replay is not available for this webinar."
    retryable = False


class ChatSendError(WebinarError):
    """A chat message could not be delivered."""


class InteractionSubmitError(WebinarError):
    """An interaction response could not be recorded."""


class PlaybackError(WebinarError):
    """Playback stopped because of an unrecoverable stream failure."""
