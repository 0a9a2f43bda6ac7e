"""
Error types raised by the pipeline services.

Callers (an HTTP layer, the CLI) map these to client or server errors:
ValidationError and NotFoundError are client errors, PersistenceError is
a server error. CollaboratorUnavailable is absorbed inside the services
and only escapes from the collaborator clients themselves.
"""

from typing import Optional


class KycError(Exception):
    """Base class for pipeline errors"""
    code = "KYC_ERROR"


class ValidationError(KycError, ValueError):
    """Raised when input validation fails

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        suggestion: Optional suggestion for fixing the error
    """
    def __init__(self, message: str, field: str = "unknown", code: str = "VALIDATION_ERROR", suggestion: str = ""):
        self.field = field
        self.code = code
        self.suggestion = suggestion
        super().__init__(message)

    def to_dict(self):
        return {
            'error': self.code,
            'field': self.field,
            'message': str(self),
            'suggestion': self.suggestion
        }


class NotFoundError(KycError):
    """Raised when an entity does not exist or belongs to another owner.

    The two cases produce the same message so callers cannot discover
    other tenants' ids.
    """
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class PersistenceError(KycError):
    """Raised when a write fails; the enclosing transaction has been rolled back"""
    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class CollaboratorUnavailable(KycError):
    """Raised by external collaborator clients on timeout, transport or payload errors"""
    code = "COLLABORATOR_UNAVAILABLE"

    def __init__(self, collaborator: str, message: str, cause: Optional[Exception] = None):
        self.collaborator = collaborator
        self.cause = cause
        super().__init__(f"{collaborator} unavailable: {message}")
