"""
Domain errors raised by the trigger and conversation engine.
Routes map them onto HTTP status codes.
"""

from fastapi import HTTPException, status


class EngineError(Exception):
    """Base class for engine errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.message)


class ClientConfigError(EngineError):
    """Unsupported CRM type, missing required field or invalid configuration."""
    status_code = status.HTTP_400_BAD_REQUEST


class MissingPhoneError(ClientConfigError):
    """The event carries no phone number. Recorded, never retried."""

    def __init__(self, message: str = "No phone number in payload"):
        super().__init__(message)


class NotFoundError(EngineError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransitionError(EngineError):
    """Conversation status change not allowed by the state machine."""
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(EngineError):
    """CRM API auth/network failure during registration or polling."""
    status_code = status.HTTP_502_BAD_GATEWAY


class SendFailureError(EngineError):
    """Dispatch to the messaging gateway failed."""
    status_code = status.HTTP_502_BAD_GATEWAY
