"""Errors raised by the recommendation engine and its store."""


class RecommendationError(Exception):
    """Base class for recommendation failures."""


class NotFound(RecommendationError):
    """A supplied user id does not correspond to a known user."""

    def __init__(self, user_id: str):
        super().__init__(f"User with specified id [{user_id}] was not found")
        self.user_id = user_id


class StoreUnavailable(RecommendationError):
    """The backing store failed (connectivity, locking, timeout)."""


class InvalidRequest(RecommendationError, ValueError):
    """Request parameters violate the engine's preconditions."""
