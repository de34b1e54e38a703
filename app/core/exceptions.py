"""
Error taxonomy for the ranking engine.

Services raise these; routes never build HTTP errors for them by hand.
The FastAPI exception handlers in app.main translate each class to a
status code using `status_code`.
"""

from typing import Optional


class RankingEngineError(Exception):
    """Base class for all engine errors."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidLocation(RankingEngineError):
    """Coordinates are non-numeric, non-finite or out of range. Never clamped."""
    status_code = 400
    code = "INVALID_LOCATION"

    def __init__(self, message: str, latitude=None, longitude=None):
        super().__init__(message)
        self.latitude = latitude
        self.longitude = longitude


class NotFound(RankingEngineError):
    """The referenced incident does not exist."""
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class InvalidIdentifier(RankingEngineError):
    """An incident or user id that cannot address a Firestore document."""
    status_code = 400
    code = "INVALID_IDENTIFIER"

    def __init__(self, field: str, value):
        super().__init__(f"Invalid {field}: {value!r}")
        self.field = field
        self.value = value


class SpatialIndexUnavailable(RankingEngineError):
    """
    The neighborhood store could not be read. Transient and retryable.

    Distinct from a resolver returning None, which means the municipality
    has no active neighborhoods.
    """
    status_code = 503
    code = "SPATIAL_INDEX_UNAVAILABLE"
    retryable = True


class MalformedGeometry(RankingEngineError):
    """A neighborhood polygon failed validity checks. Needs operator attention."""
    status_code = 500
    code = "MALFORMED_GEOMETRY"

    def __init__(self, neighborhood_id: str, reason: str):
        super().__init__(f"Neighborhood {neighborhood_id} has malformed geometry: {reason}")
        self.neighborhood_id = neighborhood_id
        self.reason = reason


class ConcurrentUpdateError(RankingEngineError):
    """A transaction kept conflicting with concurrent writers and gave up."""
    status_code = 409
    code = "CONCURRENT_UPDATE"

    def __init__(self, message: str, attempts: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
