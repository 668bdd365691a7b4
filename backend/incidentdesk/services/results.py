import functools
import logging
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from incidentdesk.core.errors import EncryptionError, ErrorKind, IncidentDeskError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """Outcome of a public service operation. Exactly one of data/error is meaningful."""

    success: bool
    data: T | None = None
    error: str | None = None
    kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, error: str) -> "ServiceResult[T]":
        return cls(success=False, error=error, kind=kind)

    @classmethod
    def from_error(cls, exc: IncidentDeskError) -> "ServiceResult[T]":
        return cls.fail(exc.kind, exc.message)

    def as_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


def service_operation(failure_message: str):
    """
    Boundary for a public service method on an object with a ``db`` session.

    IncidentDeskError becomes a failed result carrying its kind and message.
    Storage and encryption failures are rolled back, logged with the stack
    trace, and reported with ``failure_message`` only.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs) -> ServiceResult:
            try:
                return func(self, *args, **kwargs)
            except IncidentDeskError as exc:
                self.db.rollback()
                return ServiceResult.from_error(exc)
            except (SQLAlchemyError, EncryptionError):
                self.db.rollback()
                logger.exception("%s (%s)", failure_message, func.__qualname__)
                return ServiceResult.fail(ErrorKind.INTERNAL, failure_message)

        return wrapper

    return decorator
