from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for failures surfaced to the actor at the interaction boundary."""

    kind = "internal"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        if user_message:
            self.user_message = user_message


class NotFoundError(DiscoveryError):
    kind = "not_found"
    user_message = "That item could not be found. Use /start to begin again."


class GenerationError(DiscoveryError):
    kind = "generation"
    user_message = "Could not discover anything new right now. Please try again in a moment."


class PersistenceError(DiscoveryError):
    kind = "persistence"
    user_message = "Storage is unavailable right now. Please try again later."
