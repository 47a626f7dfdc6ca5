"""Typed failures raised by the circulation core.

Every error is local to the one operation that raised it. The REST layer
maps them to HTTP status codes; the CLI prints them and exits non-zero.
"""


class LibraryError(Exception):
    """Base class for every failure reported to a caller."""

    kind = "LibraryError"


class NotFound(LibraryError):
    """The referenced id does not resolve to a record."""

    kind = "NotFound"


class InvalidState(LibraryError):
    """The operation is not legal from the record's current state."""

    kind = "InvalidState"


class LimitExceeded(LibraryError):
    """A policy cap (e.g. the renewal limit) has been reached."""

    kind = "LimitExceeded"


class ValidationError(LibraryError):
    """A required field is missing or malformed."""

    kind = "ValidationError"


class LoanAlreadyReturned(InvalidState, NotFound):
    """Returning a loan that is already closed: there is no open loan with this id."""

    kind = "InvalidState"
