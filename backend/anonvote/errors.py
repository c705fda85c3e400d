"""
AnonVote Error Types
Typed failures raised by services and rendered by the API layer
"""

from fastapi import status


class VotingError(Exception):
    """Base class for every failure a caller may see"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Request failed"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(VotingError):
    """Malformed or missing input"""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class Unauthorized(VotingError):
    """No session, or an invalid signature or proof"""
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Unauthorized"


class CryptoFailure(Unauthorized):
    """Proof or signature verification failed or could not complete"""
    default_detail = "Invalid proof"


class Forbidden(VotingError):
    """Authenticated but ineligible, or the action was already taken"""
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Forbidden"


class NotFound(VotingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Conflict(VotingError):
    """Uniqueness violation surfaced from storage"""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"


class InvalidState(VotingError):
    """Operation not valid for the current poll or group status"""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid state"


class CapabilityUnavailable(VotingError):
    status_code = status.HTTP_501_NOT_IMPLEMENTED
    default_detail = "Not supported"
