"""Tests for ProgressService use cases."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import httpx
import pytest

from src.auth.permissions import Persona
from src.auth.schemas import AccessContext
from src.certificates.issuer import (
    HttpCertificateIssuer,
    IssueCertificateParams,
    IssuedCertificate,
)
from src.courses.models import ContentStatus, CourseStructure
from src.progress.events import (
    CertificateIssuedEvent,
    CourseCompletedEvent,
    EnrollmentCreatedEvent,
    EnrollmentExpiredEvent,
    LessonCompletedEvent,
    ModuleCompletedEvent,
)
from src.progress.exceptions import (
    AccessDeniedError,
    AlreadyExistsError,
    ConcurrencyConflictError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
)
from src.progress.models import Enrollment, EnrollmentStatus
from src.progress.repository import InMemoryEnrollmentRepository
from src.progress.schemas import EnrollInCourseDto, UpdateLessonProgressDto
from src.progress.service import ProgressService


async def enroll(
    service: ProgressService, course: CourseStructure, student_id: UUID
) -> Enrollment:
    return await service.enroll_in_course(
        EnrollInCourseDto(
            tenant_id=course.tenant_id, student_id=student_id, course_id=course.id
        )
    )


def complete(lesson_id: UUID, score: float | None = None) -> UpdateLessonProgressDto:
    return UpdateLessonProgressDto(lesson_id=lesson_id, completed=True, score=score)


def of_type(events, event_type) -> list:
    return [e for e in events if isinstance(e, event_type)]


class StaleReadRepository(InMemoryEnrollmentRepository):
    """Serves queued snapshots to the next find_by_id calls."""

    def __init__(self) -> None:
        super().__init__()
        self.stale_reads: list[Enrollment] = []

    async def find_by_id(self, enrollment_id: UUID) -> Enrollment | None:
        if self.stale_reads:
            return self.stale_reads.pop(0)
        return await super().find_by_id(enrollment_id)


class TestEnrollInCourse:
    """Tests for enroll_in_course."""

    @pytest.mark.asyncio
    async def test_enroll_seeds_every_course_lesson(
        self, progress_service, course, student_id, course_repository, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)

        assert enrollment.status == EnrollmentStatus.ACTIVE.value
        assert enrollment.version == 1
        assert set(enrollment.lesson_progress) == set(course.lesson_ids)
        assert set(enrollment.module_progress) == {m.id for m in course.modules}
        assert enrollment.expires_at is None
        assert course_repository.enrollment_counts[course.id] == 1
        assert [type(e) for e in published] == [EnrollmentCreatedEvent]

    @pytest.mark.asyncio
    async def test_enroll_twice_raises(self, progress_service, course, student_id) -> None:
        await enroll(progress_service, course, student_id)
        with pytest.raises(AlreadyExistsError):
            await enroll(progress_service, course, student_id)

    @pytest.mark.asyncio
    async def test_suspended_enrollment_blocks_reenrollment(
        self, progress_service, course, student_id, admin
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        await progress_service.suspend_enrollment(enrollment.id, admin)

        with pytest.raises(AlreadyExistsError):
            await enroll(progress_service, course, student_id)

    @pytest.mark.asyncio
    async def test_completed_enrollment_allows_reenrollment(
        self, progress_service, course, student_id, learner
    ) -> None:
        first = await enroll(progress_service, course, student_id)
        for lesson_id in course.lesson_ids:
            await progress_service.update_lesson_progress(first.id, complete(lesson_id), learner)

        second = await enroll(progress_service, course, student_id)

        assert second.id != first.id
        assert second.completion_percentage.value == 0

    @pytest.mark.asyncio
    async def test_unknown_course(self, progress_service, tenant_id, student_id) -> None:
        with pytest.raises(NotFoundError):
            await progress_service.enroll_in_course(
                EnrollInCourseDto(tenant_id=tenant_id, student_id=student_id, course_id=uuid4())
            )

    @pytest.mark.asyncio
    async def test_course_from_other_tenant_is_not_found(
        self, progress_service, course, student_id
    ) -> None:
        with pytest.raises(NotFoundError):
            await progress_service.enroll_in_course(
                EnrollInCourseDto(tenant_id=uuid4(), student_id=student_id, course_id=course.id)
            )

    @pytest.mark.asyncio
    async def test_draft_course_rejected(
        self, progress_service, course_repository, make_course, student_id
    ) -> None:
        draft = make_course(status=ContentStatus.DRAFT)
        course_repository.add(draft)
        with pytest.raises(InvalidStateError):
            await enroll(progress_service, draft, student_id)

    @pytest.mark.asyncio
    async def test_counter_failure_keeps_enrollment(
        self, progress_service, course, student_id, course_repository, enrollment_repository
    ) -> None:
        course_repository.increment_enrollment_count = AsyncMock(
            side_effect=RuntimeError("counter unavailable")
        )

        enrollment = await enroll(progress_service, course, student_id)

        assert await enrollment_repository.find_by_id(enrollment.id) is not None

    @pytest.mark.asyncio
    async def test_default_duration_sets_expiry(self, progress_service, course, student_id) -> None:
        progress_service.default_duration_days = 30
        enrollment = await enroll(progress_service, course, student_id)
        assert enrollment.days_until_expiration == 30

    @pytest.mark.asyncio
    async def test_reenroll_after_expiry(
        self, progress_service, course, student_id, enrollment_repository, published
    ) -> None:
        first = await enroll(progress_service, course, student_id)
        stored = await enrollment_repository.find_by_id(first.id)
        stored.expires_at = datetime.now(UTC) - timedelta(days=1)
        await enrollment_repository.save(stored)

        second = await enroll(progress_service, course, student_id)

        assert second.id != first.id
        expired = await enrollment_repository.find_by_id(first.id)
        assert expired.status == EnrollmentStatus.EXPIRED.value
        assert len(of_type(published, EnrollmentExpiredEvent)) == 1

    @pytest.mark.asyncio
    async def test_learner_cannot_enroll_someone_else(
        self, progress_service, course, learner
    ) -> None:
        dto = EnrollInCourseDto(
            tenant_id=course.tenant_id, student_id=uuid4(), course_id=course.id
        )
        with pytest.raises(AccessDeniedError):
            await progress_service.enroll_in_course(dto, context=learner)

    @pytest.mark.asyncio
    async def test_admin_enrolls_someone_else(self, progress_service, course, admin) -> None:
        student = uuid4()
        dto = EnrollInCourseDto(tenant_id=course.tenant_id, student_id=student, course_id=course.id)
        enrollment = await progress_service.enroll_in_course(dto, context=admin)
        assert enrollment.student_id == student

    @pytest.mark.asyncio
    async def test_cross_tenant_enrollment_denied(self, progress_service, course, student_id) -> None:
        outsider = AccessContext(user_id=student_id, tenant_id=uuid4(), persona=Persona.LEARNER)
        dto = EnrollInCourseDto(
            tenant_id=course.tenant_id, student_id=student_id, course_id=course.id
        )
        with pytest.raises(AccessDeniedError):
            await progress_service.enroll_in_course(dto, context=outsider)


class TestLessonProgress:
    """Tests for start_lesson and update_lesson_progress."""

    @pytest.mark.asyncio
    async def test_start_lesson(self, progress_service, course, student_id, learner) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        lesson_id = course.lesson_ids[0]

        progress = await progress_service.start_lesson(enrollment.id, lesson_id, learner)
        again = await progress_service.start_lesson(enrollment.id, lesson_id, learner)

        assert progress.attempts == 1
        assert again.attempts == 1

    @pytest.mark.asyncio
    async def test_start_lesson_outside_course(
        self, progress_service, course, student_id, learner
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        with pytest.raises(NotFoundError):
            await progress_service.start_lesson(enrollment.id, uuid4(), learner)

    @pytest.mark.asyncio
    async def test_unknown_enrollment(self, progress_service, learner) -> None:
        with pytest.raises(NotFoundError):
            await progress_service.start_lesson(uuid4(), uuid4(), learner)

    @pytest.mark.asyncio
    async def test_update_untracked_lesson_leaves_enrollment_unchanged(
        self, progress_service, course, student_id, learner, enrollment_repository
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)

        with pytest.raises(InvalidStateError):
            await progress_service.update_lesson_progress(
                enrollment.id,
                UpdateLessonProgressDto(lesson_id=uuid4(), video_position=10, time_spent=30),
                learner,
            )

        stored = await enrollment_repository.find_by_id(enrollment.id)
        assert stored.version == enrollment.version
        assert stored.total_time_spent == 0

    @pytest.mark.asyncio
    async def test_update_merges_progress_data(
        self, progress_service, course, student_id, learner, enrollment_repository
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        lesson_id = course.lesson_ids[0]

        await progress_service.update_lesson_progress(
            enrollment.id,
            UpdateLessonProgressDto(lesson_id=lesson_id, video_position=42.5, time_spent=120),
            learner,
        )
        await progress_service.update_lesson_progress(
            enrollment.id,
            UpdateLessonProgressDto.model_validate(
                {
                    "lesson_id": lesson_id,
                    "assignment_submission": {"content": "essay", "attachments": ["a.pdf"]},
                    "time_spent": 60,
                }
            ),
            learner,
        )

        stored = await enrollment_repository.find_by_id(enrollment.id)
        record = stored.get_lesson_progress(lesson_id)
        assert record.progress_data.video_position == 42.5
        assert record.progress_data.assignment_submission.content == "essay"
        assert record.progress_data.assignment_submission.submitted_at is not None
        assert record.time_spent_seconds == 180
        assert stored.total_time_spent == 180

        module = stored.get_module_summary(course.modules[0].id)
        assert module.in_progress_lessons == 1
        assert module.total_time_spent == 180


class TestCourseCompletion:
    """Tests for the completion cascade and certificate issuance."""

    @pytest.mark.asyncio
    async def test_completing_every_lesson_issues_certificate(
        self, progress_service, course, student_id, learner, issuer, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)

        for lesson_id in course.lesson_ids:
            result = await progress_service.update_lesson_progress(
                enrollment.id, complete(lesson_id, score=90), learner
            )

        assert result.status == EnrollmentStatus.COMPLETED.value
        assert result.completion_percentage.value == 100
        assert result.certificate_id == "CERT-2024-0001"

        issuer.issue.assert_awaited_once()
        params = issuer.issue.await_args.args[0]
        assert params.course_name == course.title
        assert params.enrollment_id == enrollment.id
        assert params.course_duration_minutes == 30
        assert params.score == 90

        assert len(of_type(published, LessonCompletedEvent)) == 3
        assert len(of_type(published, ModuleCompletedEvent)) == 2
        assert len(of_type(published, CourseCompletedEvent)) == 1
        issued = of_type(published, CertificateIssuedEvent)
        assert [e.certificate_id for e in issued] == ["CERT-2024-0001"]

    @pytest.mark.asyncio
    async def test_failing_issuer_keeps_completion_without_certificate(
        self, progress_service, make_course, course_repository, student_id, learner, issuer,
        published, enrollment_repository,
    ) -> None:
        two_lessons = make_course(lessons_per_module=(2,))
        course_repository.add(two_lessons)
        issuer.issue.side_effect = ExternalServiceError("issuer down")
        l1, l2 = two_lessons.lesson_ids
        enrollment = await enroll(progress_service, two_lessons, student_id)

        await progress_service.start_lesson(enrollment.id, l1, learner)
        await progress_service.start_lesson(enrollment.id, l2, learner)
        await progress_service.update_lesson_progress(enrollment.id, complete(l1), learner)
        result = await progress_service.update_lesson_progress(
            enrollment.id, complete(l2, score=65), learner
        )

        assert result.is_completed
        assert result.certificate_id is None
        assert result.get_lesson_progress(l2).passed is False
        assert result.get_lesson_progress(l2).is_completed

        completed = of_type(published, CourseCompletedEvent)
        assert len(completed) == 1
        assert completed[0].certificate_issued is False
        assert of_type(published, CertificateIssuedEvent) == []

        stored = await enrollment_repository.find_by_id(enrollment.id)
        assert stored.is_completed
        assert stored.certificate_id is None

    @pytest.mark.asyncio
    async def test_garbled_issuer_response_keeps_completion(
        self, progress_service, course, student_id, learner, published
    ) -> None:
        progress_service.certificate_issuer = HttpCertificateIssuer(
            base_url="https://certs.example.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="OK")),
        )
        enrollment = await enroll(progress_service, course, student_id)

        for lesson_id in course.lesson_ids:
            result = await progress_service.update_lesson_progress(
                enrollment.id, complete(lesson_id), learner
            )

        assert result.is_completed
        assert result.certificate_id is None
        assert len(of_type(published, CourseCompletedEvent)) == 1
        assert of_type(published, CertificateIssuedEvent) == []

    @pytest.mark.asyncio
    async def test_attach_conflict_keeps_completion(
        self, progress_service, course, student_id, learner, issuer, published,
        enrollment_repository,
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)

        async def issue_then_contend(params: IssueCertificateParams) -> IssuedCertificate:
            # Every later write loses the version race
            enrollment_repository.save = AsyncMock(side_effect=ConcurrencyConflictError)
            return IssuedCertificate(id="CERT-2024-0001")

        issuer.issue.side_effect = issue_then_contend

        for lesson_id in course.lesson_ids:
            result = await progress_service.update_lesson_progress(
                enrollment.id, complete(lesson_id), learner
            )

        assert result.is_completed
        assert result.certificate_id is None
        assert enrollment_repository.save.await_count == progress_service.max_save_retries
        assert of_type(published, CertificateIssuedEvent) == []

    @pytest.mark.asyncio
    async def test_async_mode_defers_issuance(
        self, progress_service, course, student_id, learner, issuer, published
    ) -> None:
        progress_service.issue_certificates_inline = False
        enrollment = await enroll(progress_service, course, student_id)

        for lesson_id in course.lesson_ids:
            result = await progress_service.update_lesson_progress(
                enrollment.id, complete(lesson_id), learner
            )

        assert result.is_completed
        assert result.certificate_id is None
        issuer.issue.assert_not_awaited()
        assert len(of_type(published, CourseCompletedEvent)) == 1

    @pytest.mark.asyncio
    async def test_review_after_completion_keeps_percentage(
        self, progress_service, course, student_id, learner, issuer
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        for lesson_id in course.lesson_ids:
            await progress_service.update_lesson_progress(
                enrollment.id, complete(lesson_id), learner
            )

        result = await progress_service.update_lesson_progress(
            enrollment.id,
            UpdateLessonProgressDto(lesson_id=course.lesson_ids[0], notes="revision", completed=True),
            learner,
        )

        assert result.completion_percentage.value == 100
        issuer.issue.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_module_average_score(
        self, progress_service, course, student_id, learner
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        first, second = course.modules[0].lesson_ids

        await progress_service.update_lesson_progress(enrollment.id, complete(first, 80), learner)
        result = await progress_service.update_lesson_progress(
            enrollment.id, complete(second, 100), learner
        )

        module = result.get_module_summary(course.modules[0].id)
        assert module.is_complete
        assert module.average_score == 90


class TestConcurrency:
    """Optimistic concurrency on the enrollment aggregate."""

    @pytest.mark.asyncio
    async def test_stale_duplicate_completion_publishes_one_event(
        self, course_repository, issuer, event_bus, published, course, student_id, learner
    ) -> None:
        repository = StaleReadRepository()
        service = ProgressService(
            enrollments=repository,
            courses=course_repository,
            certificate_issuer=issuer,
            event_bus=event_bus,
        )
        enrollment = await enroll(service, course, student_id)
        lesson_id = course.lesson_ids[0]
        snapshot = await repository.find_by_id(enrollment.id)

        await service.update_lesson_progress(enrollment.id, complete(lesson_id), learner)

        # Second writer loaded before the first one saved
        repository.stale_reads.append(snapshot)
        result = await service.update_lesson_progress(
            enrollment.id, complete(lesson_id), learner
        )

        assert len(of_type(published, LessonCompletedEvent)) == 1
        assert result.completed_lessons_count == 1
        stored = await repository.find_by_id(enrollment.id)
        assert stored.version == 3

    @pytest.mark.asyncio
    async def test_concurrent_completion_calls(
        self, progress_service, course, student_id, learner, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        lesson_id = course.lesson_ids[0]

        await asyncio.gather(
            progress_service.update_lesson_progress(enrollment.id, complete(lesson_id), learner),
            progress_service.update_lesson_progress(enrollment.id, complete(lesson_id), learner),
        )

        assert len(of_type(published, LessonCompletedEvent)) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, progress_service, course, student_id, learner, enrollment_repository, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        published.clear()
        enrollment_repository.save = AsyncMock(side_effect=ConcurrencyConflictError)

        with pytest.raises(ConcurrencyConflictError):
            await progress_service.start_lesson(enrollment.id, course.lesson_ids[0], learner)

        assert enrollment_repository.save.await_count == progress_service.max_save_retries
        assert published == []


class TestAccessControl:
    """Persona and tenant checks."""

    @pytest.mark.asyncio
    async def test_learner_cannot_touch_another_learners_enrollment(
        self, progress_service, course, student_id, tenant_id
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        other = AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.LEARNER)

        with pytest.raises(AccessDeniedError):
            await progress_service.get_enrollment_progress(enrollment.id, other)
        with pytest.raises(AccessDeniedError):
            await progress_service.start_lesson(enrollment.id, course.lesson_ids[0], other)

    @pytest.mark.asyncio
    async def test_denied_mutation_is_not_persisted(
        self, progress_service, course, student_id, tenant_id, enrollment_repository
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        other = AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.LEARNER)

        with pytest.raises(AccessDeniedError):
            await progress_service.update_lesson_progress(
                enrollment.id, complete(course.lesson_ids[0]), other
            )

        stored = await enrollment_repository.find_by_id(enrollment.id)
        assert stored.completed_lessons_count == 0
        assert stored.version == enrollment.version

    @pytest.mark.asyncio
    async def test_instructor_of_course_can_read(
        self, progress_service, course, student_id, instructor
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        summary = await progress_service.get_enrollment_progress(enrollment.id, instructor)
        assert summary.enrollment_id == enrollment.id

    @pytest.mark.asyncio
    async def test_other_instructor_denied(
        self, progress_service, course, student_id, tenant_id
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        other = AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.INSTRUCTOR)
        with pytest.raises(AccessDeniedError):
            await progress_service.get_enrollment_progress(enrollment.id, other)

    @pytest.mark.asyncio
    async def test_admin_limited_to_own_tenant(
        self, progress_service, course, student_id, admin
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        assert (await progress_service.get_enrollment_progress(enrollment.id, admin)).enrollment_id

        foreign_admin = AccessContext(user_id=uuid4(), tenant_id=uuid4(), persona=Persona.ADMIN)
        with pytest.raises(AccessDeniedError):
            await progress_service.get_enrollment_progress(enrollment.id, foreign_admin)

    @pytest.mark.asyncio
    async def test_super_admin_crosses_tenants(
        self, progress_service, course, student_id, super_admin
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        summary = await progress_service.get_enrollment_progress(enrollment.id, super_admin)
        assert summary.enrollment_id == enrollment.id


class TestQueries:
    @pytest.mark.asyncio
    async def test_progress_summary(
        self, progress_service, course, student_id, learner
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        first_lesson = course.modules[0].lessons[0]
        await progress_service.update_lesson_progress(
            enrollment.id, complete(first_lesson.id, score=90), learner
        )

        summary = await progress_service.get_enrollment_progress(enrollment.id, learner)

        assert summary.completion_percentage == 33
        assert summary.status == EnrollmentStatus.ACTIVE
        assert [m.module_id for m in summary.modules] == [m.id for m in course.modules]
        assert summary.modules[0].completed_lessons == 1
        assert summary.modules[0].progress_percentage == 50
        assert summary.modules[0].title == "Module 1"
        assert summary.modules[1].progress_percentage == 0
        assert len(summary.recent_progress) == 1
        assert summary.recent_progress[0].lesson_title == first_lesson.title
        assert summary.recent_progress[0].score == 90

    @pytest.mark.asyncio
    async def test_recent_progress_is_limited(
        self, progress_service, make_course, course_repository, student_id, learner
    ) -> None:
        big = make_course(lessons_per_module=(8,))
        course_repository.add(big)
        enrollment = await enroll(progress_service, big, student_id)
        for lesson_id in big.lesson_ids[:7]:
            await progress_service.update_lesson_progress(
                enrollment.id, complete(lesson_id), learner
            )

        summary = await progress_service.get_enrollment_progress(enrollment.id, learner)

        assert len(summary.recent_progress) == 5
        assert all(item.status == "completed" for item in summary.recent_progress)

    @pytest.mark.asyncio
    async def test_course_enrollments_by_persona(
        self, progress_service, course, student_id, learner, instructor, admin, tenant_id
    ) -> None:
        await enroll(progress_service, course, student_id)
        await enroll(progress_service, course, uuid4())

        assert len(await progress_service.get_course_enrollments(course.id, instructor)) == 2
        assert len(await progress_service.get_course_enrollments(course.id, admin)) == 2

        with pytest.raises(AccessDeniedError):
            await progress_service.get_course_enrollments(course.id, learner)

        other = AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.INSTRUCTOR)
        with pytest.raises(AccessDeniedError):
            await progress_service.get_course_enrollments(course.id, other)

        with pytest.raises(NotFoundError):
            await progress_service.get_course_enrollments(uuid4(), admin)

    @pytest.mark.asyncio
    async def test_student_enrollments(
        self, progress_service, course, make_course, course_repository, student_id, learner,
        admin, tenant_id,
    ) -> None:
        second = make_course(lessons_per_module=(1,))
        course_repository.add(second)
        await enroll(progress_service, course, student_id)
        done = await enroll(progress_service, second, student_id)
        await progress_service.update_lesson_progress(
            done.id, complete(second.lesson_ids[0]), learner
        )

        assert len(await progress_service.get_student_enrollments(student_id, learner)) == 2
        completed = await progress_service.get_student_enrollments(
            student_id, admin, status=EnrollmentStatus.COMPLETED
        )
        assert [e.id for e in completed] == [done.id]

        other = AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.LEARNER)
        with pytest.raises(AccessDeniedError):
            await progress_service.get_student_enrollments(student_id, other)


class TestAdministration:
    @pytest.mark.asyncio
    async def test_suspend_blocks_activity_until_reactivated(
        self, progress_service, course, student_id, learner, admin
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        lesson_id = course.lesson_ids[0]

        suspended = await progress_service.suspend_enrollment(enrollment.id, admin, "refund")
        assert suspended.status == EnrollmentStatus.SUSPENDED.value
        assert suspended.suspension_reason == "refund"

        with pytest.raises(InvalidStateError):
            await progress_service.start_lesson(enrollment.id, lesson_id, learner)

        reactivated = await progress_service.reactivate_enrollment(enrollment.id, admin)
        assert reactivated.is_active
        progress = await progress_service.start_lesson(enrollment.id, lesson_id, learner)
        assert progress.attempts == 1

    @pytest.mark.asyncio
    async def test_learner_cannot_suspend_own_enrollment(
        self, progress_service, course, student_id, learner
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        with pytest.raises(AccessDeniedError):
            await progress_service.suspend_enrollment(enrollment.id, learner)

    @pytest.mark.asyncio
    async def test_course_instructor_can_suspend(
        self, progress_service, course, student_id, instructor
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        suspended = await progress_service.suspend_enrollment(enrollment.id, instructor)
        assert suspended.status == EnrollmentStatus.SUSPENDED.value

    @pytest.mark.asyncio
    async def test_reactivate_active_enrollment_raises(
        self, progress_service, course, student_id, admin
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        with pytest.raises(InvalidStateError):
            await progress_service.reactivate_enrollment(enrollment.id, admin)


class TestLazyExpiry:
    @pytest.mark.asyncio
    async def test_expired_enrollment_is_persisted_then_rejected(
        self, progress_service, course, student_id, learner, enrollment_repository, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        stored = await enrollment_repository.find_by_id(enrollment.id)
        stored.expires_at = datetime.now(UTC) - timedelta(hours=1)
        await enrollment_repository.save(stored)

        with pytest.raises(InvalidStateError):
            await progress_service.start_lesson(enrollment.id, course.lesson_ids[0], learner)

        expired = await enrollment_repository.find_by_id(enrollment.id)
        assert expired.status == EnrollmentStatus.EXPIRED.value
        assert len(of_type(published, EnrollmentExpiredEvent)) == 1

        # Already expired: no second event
        summary = await progress_service.get_enrollment_progress(enrollment.id, learner)
        assert summary.status == EnrollmentStatus.EXPIRED
        assert len(of_type(published, EnrollmentExpiredEvent)) == 1

    @pytest.mark.asyncio
    async def test_outsider_read_does_not_expire_enrollment(
        self, progress_service, course, student_id, tenant_id, enrollment_repository, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        stored = await enrollment_repository.find_by_id(enrollment.id)
        stored.expires_at = datetime.now(UTC) - timedelta(hours=1)
        await enrollment_repository.save(stored)
        foreign_admin = AccessContext(user_id=uuid4(), tenant_id=uuid4(), persona=Persona.ADMIN)
        classmate = AccessContext(user_id=uuid4(), tenant_id=tenant_id, persona=Persona.LEARNER)

        with pytest.raises(AccessDeniedError):
            await progress_service.get_enrollment_progress(enrollment.id, foreign_admin)
        with pytest.raises(AccessDeniedError):
            await progress_service.start_lesson(enrollment.id, course.lesson_ids[0], classmate)

        untouched = await enrollment_repository.find_by_id(enrollment.id)
        assert untouched.status == EnrollmentStatus.ACTIVE.value
        assert untouched.version == stored.version
        assert of_type(published, EnrollmentExpiredEvent) == []

    @pytest.mark.asyncio
    async def test_lost_expiry_race_still_answers_read(
        self, progress_service, course, student_id, learner, enrollment_repository, published
    ) -> None:
        enrollment = await enroll(progress_service, course, student_id)
        stored = await enrollment_repository.find_by_id(enrollment.id)
        stored.expires_at = datetime.now(UTC) - timedelta(hours=1)
        await enrollment_repository.save(stored)
        enrollment_repository.save = AsyncMock(side_effect=ConcurrencyConflictError)

        summary = await progress_service.get_enrollment_progress(enrollment.id, learner)

        assert summary.status == EnrollmentStatus.EXPIRED
        assert enrollment_repository.save.await_count == 2
        assert of_type(published, EnrollmentExpiredEvent) == []
