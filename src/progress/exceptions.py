"""Error taxonomy for enrollment and progress tracking.

Every error carries a machine-readable ``code`` that the HTTP layer maps to
a status code (see ``dependencies.handle_progress_error``).
"""


class ProgressError(Exception):
    """Base progress error."""

    def __init__(self, message: str, code: str = "progress_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(ProgressError):
    """Missing enrollment, course or lesson progress record."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, "not_found")


class AlreadyExistsError(ProgressError):
    """Student already holds an active enrollment for the course."""

    def __init__(self, message: str = "Already enrolled in this course"):
        super().__init__(message, "already_exists")


class InvalidStateError(ProgressError):
    """Operation not allowed in the current enrollment or lesson state."""

    def __init__(self, message: str = "Operation not allowed in the current state"):
        super().__init__(message, "invalid_state")


class AccessDeniedError(ProgressError):
    """Caller may not act on this enrollment or course."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "access_denied")


class ExternalServiceError(ProgressError):
    """A collaborating service (certificate issuer) failed."""

    def __init__(self, message: str = "External service failure"):
        super().__init__(message, "external_service_failure")


class ConcurrencyConflictError(ProgressError):
    """Enrollment was saved by another writer since it was loaded."""

    def __init__(self, message: str = "Enrollment was modified concurrently"):
        super().__init__(message, "concurrency_conflict")
