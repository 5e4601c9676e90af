"""Session error taxonomy.

Every error subclasses ValueError so the REST layer can keep mapping
``ValueError`` to a 400 response; the WebSocket dispatcher turns them into
``ERROR`` frames (except DuplicateBid, which is dropped).
"""

from __future__ import annotations


class SessionError(ValueError):
    """Base class. ``str(exc)`` is the message sent to the client."""

    message = "Session error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class UnknownUser(SessionError):
    message = "User not found"


class UnknownGame(SessionError):
    message = "Game not found"


class NotIdentified(SessionError):
    message = "Please identify first"


class GameAlreadyStarted(SessionError):
    message = "Game already started"


class DuplicateBid(SessionError):
    message = "Already bid this round"


class InvalidAction(SessionError):
    message = "Action not allowed"


class InternalFailure(SessionError):
    message = "Internal server error"
