"""Domain events raised by the Enrollment aggregate.

Events are immutable facts. The aggregate collects them while it is mutated
and the service publishes them only after the enrollment has been saved.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar
from uuid import UUID, uuid4


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    """Base class for enrollment events."""

    event_name: ClassVar[str] = "DomainEvent"

    aggregate_id: UUID
    tenant_id: UUID
    student_id: UUID
    course_id: UUID
    event_id: UUID = field(default_factory=uuid4)
    occurred_on: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the wire (UUIDs and datetimes as strings)."""
        payload: dict[str, Any] = {"event_name": self.event_name}
        for key, value in asdict(self).items():
            if isinstance(value, UUID):
                payload[key] = str(value)
            elif isinstance(value, datetime):
                payload[key] = value.isoformat()
            else:
                payload[key] = value
        return payload


@dataclass(frozen=True, kw_only=True)
class EnrollmentCreatedEvent(DomainEvent):
    event_name: ClassVar[str] = "EnrollmentCreated"


@dataclass(frozen=True, kw_only=True)
class LessonCompletedEvent(DomainEvent):
    event_name: ClassVar[str] = "LessonCompleted"

    lesson_id: UUID
    completed_at: datetime
    score: float | None = None
    passed: bool = True


@dataclass(frozen=True, kw_only=True)
class ModuleCompletedEvent(DomainEvent):
    event_name: ClassVar[str] = "ModuleCompleted"

    module_id: UUID
    completed_at: datetime


@dataclass(frozen=True, kw_only=True)
class CourseCompletedEvent(DomainEvent):
    event_name: ClassVar[str] = "CourseCompleted"

    completed_at: datetime
    certificate_issued: bool


@dataclass(frozen=True, kw_only=True)
class CertificateIssuedEvent(DomainEvent):
    event_name: ClassVar[str] = "CertificateIssued"

    certificate_id: str


@dataclass(frozen=True, kw_only=True)
class EnrollmentExpiredEvent(DomainEvent):
    event_name: ClassVar[str] = "EnrollmentExpired"

    expires_at: datetime
