class LibraryError(Exception):
    """Base for errors surfaced to the caller as an HTTP status and message."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(LibraryError):
    status_code = 404


class ConflictError(LibraryError):
    """A business rule refused the operation: no copies, limit reached, wrong state."""

    status_code = 409


class ForbiddenError(LibraryError):
    status_code = 403


class InvalidInputError(LibraryError):
    status_code = 400
