"""
Errors

Exceptions raised across the engine. Each carries a machine-readable `kind`
that API routes pass through to clients.
"""


class SpanGuardError(Exception):
    """Base error with a stable kind tag."""

    kind = "internal"

    def __init__(self, message: str, kind: str = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidFeedbackError(SpanGuardError):
    """A training rating failed validation. Nothing was written."""

    kind = "malformed_feedback"


class CollaboratorUnavailableError(SpanGuardError):
    """A trace, metrics or LLM backend could not be reached."""

    kind = "collaborator_unavailable"
