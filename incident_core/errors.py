from typing import Any, Dict, List, Optional


class IncidentServiceError(Exception):
    """Base Exception Class"""
    pass


class ValidationError(IncidentServiceError):
    """Malformed or out-of-range input. `details` lists every offending field."""

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFound(IncidentServiceError):
    """Unknown incident or incident type id"""
    pass


class Forbidden(IncidentServiceError):
    """Ownership or role violation"""
    pass


class Conflict(IncidentServiceError):
    """Duplicate verification or unique-field collision"""
    pass


class Expired(IncidentServiceError):
    """Incident is no longer active and cannot be modified"""
    pass


class SpatialOperationFailure(IncidentServiceError):
    """Geometry error raised by the spatial store"""
    pass


class Transient(IncidentServiceError):
    """Connectivity problem or timeout. Safe for the caller to retry with backoff."""
    pass
