"""
errors.py - Error taxonomy shared by the services and the HTTP layer.

Services raise these internally and translate them into ServiceResult
failures at their public boundary. They never cross into the HTTP layer
as exceptions.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"      # 400
    UNAUTHENTICATED = "unauthenticated"  # 401
    FORBIDDEN = "forbidden"        # 403
    NOT_FOUND = "not_found"        # 404
    INTERNAL = "internal"          # 500


class IncidentDeskError(Exception):
    """Base exception for core failures."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        self.code = code or self.kind.value.upper()
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationFailed(IncidentDeskError):
    kind = ErrorKind.VALIDATION


class AccessDenied(IncidentDeskError):
    kind = ErrorKind.FORBIDDEN


class NotFound(IncidentDeskError):
    kind = ErrorKind.NOT_FOUND


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted. Decryption never raises."""

    pass


class EncryptionKeyError(EncryptionError):
    """Master key missing, too short, or not acceptable for the environment."""

    pass
