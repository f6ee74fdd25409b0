"""Domain errors raised by the services and mapped to HTTP responses in main."""


class NotFoundError(LookupError):
    """A referenced project, file or user does not exist for the caller (404)."""


class ConflictError(ValueError):
    """The request would clash with existing data, e.g. a rename onto a taken name (409)."""
