"""Enrollment and progress tracking module.

Provides:
- Enrollment aggregate with lesson and module progress
- Domain events for enrollment lifecycle
- Repositories (Cassandra and in-memory) with optimistic versioning
- Progress service and HTTP routes
"""

from .events import (
    CertificateIssuedEvent,
    CourseCompletedEvent,
    DomainEvent,
    EnrollmentCreatedEvent,
    EnrollmentExpiredEvent,
    LessonCompletedEvent,
    ModuleCompletedEvent,
)
from .exceptions import (
    AccessDeniedError,
    AlreadyExistsError,
    ConcurrencyConflictError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    ProgressError,
)
from .models import (
    PROGRESS_TABLES_CQL,
    Enrollment,
    EnrollmentStatus,
    LessonProgress,
    LessonProgressData,
    LessonProgressStatus,
    ModuleProgress,
    ProgressPercentage,
)


__all__ = [
    "PROGRESS_TABLES_CQL",
    "AccessDeniedError",
    "AlreadyExistsError",
    "CertificateIssuedEvent",
    "ConcurrencyConflictError",
    "CourseCompletedEvent",
    "DomainEvent",
    "Enrollment",
    "EnrollmentCreatedEvent",
    "EnrollmentExpiredEvent",
    "EnrollmentStatus",
    "ExternalServiceError",
    "InvalidStateError",
    "LessonCompletedEvent",
    "LessonProgress",
    "LessonProgressData",
    "LessonProgressStatus",
    "ModuleCompletedEvent",
    "ModuleProgress",
    "NotFoundError",
    "ProgressError",
    "ProgressPercentage",
]
