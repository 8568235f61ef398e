"""Error taxonomy for the communication audit service.

Domain code raises these; the API layer maps them to HTTP responses in
``commaudit.api.main``.  Webhook routes never surface them to providers.
"""
from __future__ import annotations


class CommunicationAuditError(Exception):
    """Base class for all domain errors."""


class ValidationError(CommunicationAuditError, ValueError):
    """Malformed or out-of-range input.  Always a client error."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body: dict = {"detail": self.message}
        if self.field is not None:
            body["field"] = self.field
        return body


class NotFoundError(CommunicationAuditError, LookupError):
    """A referenced export job or log does not exist."""


class ProviderPayloadError(CommunicationAuditError):
    """A single webhook event could not be parsed or mapped."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class RenderError(CommunicationAuditError):
    """An export could not be rendered."""


class InternalError(CommunicationAuditError):
    """Unexpected failure, e.g. storage unavailable."""
