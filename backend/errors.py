"""Error taxonomy for the trip engine.

Only ``GeolocationUnavailable`` and ``RouteUnavailable`` are allowed to stop
a trip from starting. The others are recovered where they occur.
"""


class VibenavError(Exception):
    """Base class for all trip engine errors."""


class GeolocationUnavailable(VibenavError):
    """No position fix (or permission denied); live trips cannot start."""


class RouteUnavailable(VibenavError):
    """The routing collaborator failed or returned an empty route."""


class ConditionsUnavailable(VibenavError):
    """Weather could not be fetched; the trip proceeds with unknown conditions."""


class RecommendationError(VibenavError):
    """The recommender failed or returned something unusable."""

    MALFORMED_RESPONSE = "malformed_response"
    RECOMMENDER_FAILED = "recommender_failed"

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason


class FeedbackWriteError(VibenavError):
    """A feedback event could not be persisted."""


class TripNotFound(VibenavError):
    """No active trip with the given id."""
