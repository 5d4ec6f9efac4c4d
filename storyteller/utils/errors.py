"""Error taxonomy shared by the server, the gateway and the client."""
from __future__ import annotations

from typing import Optional

GENERIC_STORY_ERROR = "Error occurred creating story."
CONTENT_POLICY_CODE = "content_policy_violation"
SESSION_EXPIRED_CODE = "session_expired"
SESSION_EXPIRED_ERROR = "This story expired after a period of inactivity. Start a new story."


class StoryError(Exception):
    """Base class for every error raised by the storyteller package."""


class InvalidInput(StoryError):
    """The request was rejected before any log mutation or external call."""


class GenerationFailed(StoryError):
    """A text or image capability call failed.

    ``code`` is the provider's classification when one is available
    (``content_policy_violation``, ``rate_limit_exceeded`` …).  ``story`` holds
    the committed narrative text when only the illustration step failed.
    """

    def __init__(
        self,
        message: str = GENERIC_STORY_ERROR,
        *,
        code: Optional[str] = None,
        story: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.story = story

    @property
    def content_policy(self) -> bool:
        return self.code == CONTENT_POLICY_CODE


class InternalStateError(StoryError):
    """The log or a streamed record had an unexpected shape."""


class RequestInFlight(StoryError):
    """A client action was attempted while a request is still awaiting a response."""


class SessionExpired(StoryError):
    """The server no longer holds the session this client was writing into."""


def describe_failure(exc: GenerationFailed) -> str:
    """User-facing text: generic unless the provider classified the failure."""
    if exc.content_policy:
        return (
            "The request was rejected by the content policy. "
            "The story text may still be shown without an illustration."
        )
    if exc.code:
        return f"Error occurred creating story ({exc.code})."
    return GENERIC_STORY_ERROR
