"""Error taxonomy shared by the cache, the pipelines and the HTTP layer."""
from __future__ import annotations


class PlannerError(Exception):
    """Base class for failures talking to the backing store."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class NetworkTransientError(PlannerError):
    """A connection-level failure that is worth one more attempt."""

    user_message = "The network connection is unstable. Please try again in a moment."


class RemoteRejectedError(PlannerError):
    """The backing store refused the request (permissions, validation)."""

    user_message = "The change was rejected by the server. Check your permissions and input."


class NotAuthenticatedError(PlannerError):
    """No account is attached to the session."""

    user_message = "You are signed out. Sign in again and retry."


class EntityNotFoundError(LookupError):
    """The requested store, product or category is not in the local snapshot."""


__all__ = [
    "PlannerError",
    "NetworkTransientError",
    "RemoteRejectedError",
    "NotAuthenticatedError",
    "EntityNotFoundError",
]
