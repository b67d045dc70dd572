"""Shared test fixtures."""

import os


# Must be set before src.config caches settings
os.environ["ENVIRONMENT"] = "testing"
os.environ["PERSISTENCE_BACKEND"] = "memory"
os.environ["REDIS_ENABLED"] = "false"
os.environ["CERTIFICATE_ISSUANCE_ASYNC"] = "false"
os.environ["LOG_FORMAT"] = "console"

from collections.abc import Callable, Iterator  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402
from uuid import UUID, uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.auth.permissions import Persona  # noqa: E402
from src.auth.schemas import AccessContext  # noqa: E402
from src.auth.security import create_access_token  # noqa: E402
from src.certificates.issuer import IssuedCertificate  # noqa: E402
from src.core.events import DomainEventBus  # noqa: E402
from src.courses.models import (  # noqa: E402
    ContentStatus,
    CourseStructure,
    LessonRef,
    ModuleStructure,
)
from src.courses.repository import InMemoryCourseRepository  # noqa: E402
from src.progress.events import (  # noqa: E402
    CertificateIssuedEvent,
    CourseCompletedEvent,
    DomainEvent,
    EnrollmentCreatedEvent,
    EnrollmentExpiredEvent,
    LessonCompletedEvent,
    ModuleCompletedEvent,
)
from src.progress.repository import InMemoryEnrollmentRepository  # noqa: E402
from src.progress.service import ProgressService  # noqa: E402


ALL_EVENT_TYPES = (
    EnrollmentCreatedEvent,
    LessonCompletedEvent,
    ModuleCompletedEvent,
    CourseCompletedEvent,
    CertificateIssuedEvent,
    EnrollmentExpiredEvent,
)


# ==============================================================================
# Identities
# ==============================================================================


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def student_id() -> UUID:
    return uuid4()


@pytest.fixture
def instructor_id() -> UUID:
    return uuid4()


@pytest.fixture
def learner(tenant_id: UUID, student_id: UUID) -> AccessContext:
    return AccessContext(user_id=student_id, tenant_id=tenant_id, persona=Persona.LEARNER)


@pytest.fixture
def instructor(tenant_id: UUID, instructor_id: UUID) -> AccessContext:
    return AccessContext(
        user_id=instructor_id, tenant_id=tenant_id, persona=Persona.INSTRUCTOR
    )


@pytest.fixture
def admin(tenant_id: UUID) -> AccessContext:
    return AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.ADMIN)


@pytest.fixture
def super_admin() -> AccessContext:
    return AccessContext(user_id=uuid4(), tenant_id=uuid4(), persona=Persona.SUPER_ADMIN)


# ==============================================================================
# Course structure
# ==============================================================================


@pytest.fixture
def make_course(tenant_id: UUID, instructor_id: UUID) -> Callable[..., CourseStructure]:
    """Build a course; ``lessons_per_module`` gives the module shape."""

    def _make(
        lessons_per_module: tuple[int, ...] = (2, 1),
        status: ContentStatus = ContentStatus.PUBLISHED,
        title: str = "Clinical Pharmacology",
    ) -> CourseStructure:
        modules = tuple(
            ModuleStructure(
                id=uuid4(),
                title=f"Module {m + 1}",
                lessons=tuple(
                    LessonRef(id=uuid4(), title=f"Lesson {m + 1}.{n + 1}", duration_seconds=600)
                    for n in range(count)
                ),
            )
            for m, count in enumerate(lessons_per_module)
        )
        return CourseStructure(
            id=uuid4(),
            tenant_id=tenant_id,
            title=title,
            status=status.value,
            instructor_id=instructor_id,
            modules=modules,
        )

    return _make


@pytest.fixture
def course(make_course) -> CourseStructure:
    """Published course: module 1 with two lessons, module 2 with one."""
    return make_course()


# ==============================================================================
# Service wiring
# ==============================================================================


@pytest.fixture
def published() -> list[DomainEvent]:
    return []


@pytest.fixture
def event_bus(published: list[DomainEvent]) -> DomainEventBus:
    bus = DomainEventBus()

    async def record(event: DomainEvent) -> None:
        published.append(event)

    for event_type in ALL_EVENT_TYPES:
        bus.subscribe(event_type, record)
    return bus


@pytest.fixture
def issuer() -> AsyncMock:
    mock = AsyncMock()
    mock.issue.return_value = IssuedCertificate(id="CERT-2024-0001")
    return mock


@pytest.fixture
def enrollment_repository() -> InMemoryEnrollmentRepository:
    return InMemoryEnrollmentRepository()


@pytest.fixture
def course_repository(course: CourseStructure) -> InMemoryCourseRepository:
    return InMemoryCourseRepository([course])


@pytest.fixture
def progress_service(
    enrollment_repository: InMemoryEnrollmentRepository,
    course_repository: InMemoryCourseRepository,
    issuer: AsyncMock,
    event_bus: DomainEventBus,
) -> ProgressService:
    return ProgressService(
        enrollments=enrollment_repository,
        courses=course_repository,
        certificate_issuer=issuer,
        event_bus=event_bus,
    )


# ==============================================================================
# HTTP
# ==============================================================================


@pytest.fixture
def client() -> Iterator[TestClient]:
    from src.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[AccessContext], dict[str, str]]:
    def _headers(context: AccessContext) -> dict[str, str]:
        token = create_access_token(
            {
                "sub": str(context.user_id),
                "tenant_id": str(context.tenant_id),
                "persona": context.persona.value,
            }
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


def events_of(events: list[DomainEvent], event_type: type[DomainEvent]) -> list:
    return [e for e in events if isinstance(e, event_type)]


@pytest.fixture
def of_type() -> Callable[[list[DomainEvent], type[DomainEvent]], list]:
    return events_of
