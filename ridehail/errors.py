"""
Domain error taxonomy for the dispatch core.

Services raise these; ``ridehail.main`` renders them as JSON with the
matching HTTP status.
"""
from fastapi import status


class DispatchError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"


class Conflict(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"


class InvalidState(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    kind = "invalid_state"


class Unauthorized(DispatchError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "unauthorized"


class ValidationFailed(DispatchError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    kind = "validation_failed"


class Unavailable(DispatchError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    kind = "unavailable"


class UpstreamFailure(DispatchError):
    status_code = status.HTTP_502_BAD_GATEWAY
    kind = "upstream_failure"
