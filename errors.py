"""
Error taxonomy for the storefront API.

Every error raised by the service and data layers derives from AppError.
Layers add context by raising a new error ``from`` the original one, so the
transport layer can still find the underlying condition by walking
``__cause__`` instead of matching strings.
"""

from typing import Iterator, Optional, Tuple, Type, TypeVar

E = TypeVar("E", bound=BaseException)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Caller input violates a precondition."""

    status_code = 400


class CredentialError(ValidationError):
    """A password could not be hashed (empty or unusable input)."""


class Unauthorized(AppError):
    """Missing, malformed, expired or otherwise invalid credentials."""

    status_code = 401


class InvalidCredential(Unauthorized):
    pass


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class StoreError(AppError):
    """The relational store failed for a reason other than a missing row."""


class ServiceError(AppError):
    """Adds business context to a lower-level error.

    The HTTP status of a ServiceError is the status of the first error in
    its cause chain that is not itself a ServiceError.
    """


def iter_causes(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def find_cause(exc: BaseException, kind: Type[E]) -> Optional[E]:
    """Return the first error of ``kind`` in the cause chain of ``exc``."""
    for err in iter_causes(exc):
        if isinstance(err, kind):
            return err
    return None


def resolve_status(exc: BaseException) -> Tuple[int, str]:
    """Map an error to an HTTP status and a client-facing message.

    4xx responses carry the outermost message, which holds the most
    business context. 5xx responses never expose internal detail.
    """
    for err in iter_causes(exc):
        if isinstance(err, ServiceError) or not isinstance(err, AppError):
            continue
        if err.status_code < 500:
            message = exc.message if isinstance(exc, AppError) else err.message
            return err.status_code, message
        break
    return 500, "internal server error"
