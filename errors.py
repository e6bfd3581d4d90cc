from enum import Enum


class ErrorKind(str, Enum):
    duplicate = "duplicate"
    missing_dependency = "missing_dependency"
    referential_integrity = "referential_integrity"
    not_found = "not_found"
    unauthorized = "unauthorized"


class LedgerError(ValueError):
    """Business-rule violation raised by the service layer.

    Stays a ValueError so callers that only care about "bad request" can keep
    catching that; ``kind`` tells them which rule was broken.
    """

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DuplicateError(LedgerError):
    kind = ErrorKind.duplicate


class MissingDependencyError(LedgerError):
    kind = ErrorKind.missing_dependency


class ReferentialIntegrityError(LedgerError):
    kind = ErrorKind.referential_integrity


class NotFoundError(LedgerError):
    kind = ErrorKind.not_found


class UnauthorizedError(LedgerError):
    kind = ErrorKind.unauthorized
