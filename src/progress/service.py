"""Enrollment and progress tracking service layer.

Business logic for:
- Course enrollment
- Lesson start / progress updates / completion
- Module progress recomputation and course completion
- Certificate issuance on completion
- Access control per persona and tenant

Every mutation is load -> check expiry -> authorize -> mutate -> save
(version-checked) -> publish events. A save that loses a race is retried on
a freshly loaded aggregate, so the losing writer re-applies its change on
top of the winner's instead of overwriting it.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, TypeVar
from uuid import UUID

import structlog

from src.auth.schemas import AccessContext
from src.certificates.issuer import CertificateIssuer, IssueCertificateParams
from src.courses.models import CourseStructure
from src.courses.repository import CourseRepository

from .exceptions import (
    AccessDeniedError,
    AlreadyExistsError,
    ConcurrencyConflictError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
)
from .models import (
    PASSING_SCORE,
    AssignmentSubmission,
    Enrollment,
    EnrollmentStatus,
    LessonProgress,
    ModuleProgress,
)
from .repository import EnrollmentRepository
from .schemas import (
    EnrollInCourseDto,
    ModuleProgressSummary,
    ProgressSummary,
    RecentProgressItem,
    UpdateLessonProgressDto,
)


if TYPE_CHECKING:
    from src.core.events import DomainEventBus

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Mutation = Callable[[Enrollment, CourseStructure | None], T]


class ProgressService:
    """Service for enrollments and student progress."""

    def __init__(
        self,
        enrollments: EnrollmentRepository,
        courses: CourseRepository,
        certificate_issuer: CertificateIssuer,
        event_bus: "DomainEventBus",
        passing_score: int = PASSING_SCORE,
        recent_limit: int = 5,
        max_save_retries: int = 3,
        default_duration_days: int | None = None,
        issue_certificates_inline: bool = True,
    ):
        self.enrollments = enrollments
        self.courses = courses
        self.certificate_issuer = certificate_issuer
        self.event_bus = event_bus
        self.passing_score = passing_score
        self.recent_limit = recent_limit
        self.max_save_retries = max(1, max_save_retries)
        self.default_duration_days = default_duration_days
        self.issue_certificates_inline = issue_certificates_inline

    # ==========================================================================
    # Enrollment
    # ==========================================================================

    async def enroll_in_course(
        self,
        dto: EnrollInCourseDto,
        context: AccessContext | None = None,
    ) -> Enrollment:
        """Enroll a student in a published course.

        Raises:
            AccessDeniedError: Caller may not enroll this student in this tenant
            AlreadyExistsError: An active enrollment already exists
            NotFoundError: Course does not exist in the tenant
            InvalidStateError: Course is not published
        """
        if context is not None:
            self._authorize_enrollment_request(dto, context)

        existing = await self.enrollments.find_by_student_and_course(
            dto.student_id, dto.course_id, dto.tenant_id
        )
        if existing is not None:
            existing = await self._expire_if_due(existing)
            if existing.is_active:
                raise AlreadyExistsError("Student is already enrolled in this course")
            if existing.is_open:
                raise AlreadyExistsError("Enrollment in this course is suspended")

        course = await self.courses.find_by_id(dto.course_id, dto.tenant_id)
        if course is None:
            raise NotFoundError("Course not found")
        if not course.is_published:
            raise InvalidStateError("Course is not open for enrollment")

        expires_at = None
        if self.default_duration_days:
            expires_at = datetime.now(UTC) + timedelta(days=self.default_duration_days)

        enrollment = Enrollment.create(
            tenant_id=dto.tenant_id,
            student_id=dto.student_id,
            course_id=dto.course_id,
            expires_at=expires_at,
        )
        enrollment.seed_lessons(course.lesson_ids)
        for module in course.modules:
            if module.lessons:
                enrollment.update_module_progress(
                    module.id,
                    ModuleProgress(module_id=module.id, total_lessons=len(module.lessons)),
                )

        await self.enrollments.save(enrollment)

        # Separate side effect: the enrollment stands even if the counter fails
        try:
            await self.courses.increment_enrollment_count(dto.course_id, dto.tenant_id)
        except Exception as e:
            logger.error(
                "course_enrollment_count_failed",
                course_id=str(dto.course_id),
                enrollment_id=str(enrollment.id),
                error=str(e),
            )

        logger.info(
            "user_enrolled",
            enrollment_id=str(enrollment.id),
            student_id=str(dto.student_id),
            course_id=str(dto.course_id),
            lessons=course.total_lessons,
            payment_intent_id=dto.payment_intent_id,
        )

        await self._publish_events(enrollment)
        return enrollment

    def _authorize_enrollment_request(
        self, dto: EnrollInCourseDto, context: AccessContext
    ) -> None:
        if dto.tenant_id != context.tenant_id and not context.is_super_admin:
            raise AccessDeniedError
        if dto.student_id != context.user_id and not context.is_admin:
            raise AccessDeniedError("Only admins can enroll other students")

    # ==========================================================================
    # Lesson Progress
    # ==========================================================================

    async def start_lesson(
        self, enrollment_id: UUID, lesson_id: UUID, context: AccessContext
    ) -> LessonProgress:
        def mutation(
            enrollment: Enrollment, course: CourseStructure | None
        ) -> LessonProgress:
            if course is not None and course.find_module_for_lesson(lesson_id) is None:
                raise NotFoundError("Lesson not found in course")
            progress = enrollment.start_lesson(lesson_id)
            self._recompute_module_progress(enrollment, course, lesson_id)
            return progress

        _, progress = await self._mutate(enrollment_id, context, mutation)

        logger.info(
            "lesson_started",
            enrollment_id=str(enrollment_id),
            lesson_id=str(lesson_id),
            attempts=progress.attempts,
        )
        return progress

    async def update_lesson_progress(
        self,
        enrollment_id: UUID,
        dto: UpdateLessonProgressDto,
        context: AccessContext,
    ) -> Enrollment:
        """Apply a partial progress update, optionally completing the lesson.

        Raises:
            InvalidStateError: Lesson not started, or enrollment suspended/expired
        """

        def mutation(enrollment: Enrollment, course: CourseStructure | None) -> bool:
            was_completed = enrollment.is_completed

            enrollment.update_lesson_progress(
                dto.lesson_id, self._progress_changes(dto), dto.time_spent
            )
            if dto.completed:
                enrollment.complete_lesson(dto.lesson_id, dto.score, self.passing_score)
            self._recompute_module_progress(enrollment, course, dto.lesson_id)

            return enrollment.is_completed and not was_completed

        (enrollment, course), just_completed = await self._mutate(
            enrollment_id, context, mutation, with_course=True
        )

        logger.info(
            "lesson_progress_updated",
            enrollment_id=str(enrollment_id),
            lesson_id=str(dto.lesson_id),
            completed=dto.completed,
            completion_percentage=enrollment.completion_percentage.value,
        )

        if just_completed:
            logger.info(
                "course_completed",
                enrollment_id=str(enrollment.id),
                course_id=str(enrollment.course_id),
            )
            enrollment = await self._handle_course_completion(enrollment, course)

        return enrollment

    @staticmethod
    def _progress_changes(dto: UpdateLessonProgressDto) -> dict:
        changes: dict = {
            "video_position": dto.video_position,
            "quiz_answers": dto.quiz_answers,
            "notes": dto.notes,
        }
        if dto.assignment_submission is not None:
            changes["assignment_submission"] = AssignmentSubmission(
                submitted_at=datetime.now(UTC),
                content=dto.assignment_submission.content,
                attachments=tuple(dto.assignment_submission.attachments),
            )
        return changes

    def _recompute_module_progress(
        self,
        enrollment: Enrollment,
        course: CourseStructure | None,
        lesson_id: UUID,
    ) -> None:
        """Rebuild the projection of the module that contains ``lesson_id``."""
        if course is None:
            return
        module = course.find_module_for_lesson(lesson_id)
        if module is None:
            return

        records = [
            record
            for record in (enrollment.get_lesson_progress(lid) for lid in module.lesson_ids)
            if record is not None
        ]
        scores = [r.score for r in records if r.is_completed and r.score is not None]

        enrollment.update_module_progress(
            module.id,
            ModuleProgress(
                module_id=module.id,
                total_lessons=len(module.lessons),
                completed_lessons=sum(1 for r in records if r.is_completed),
                in_progress_lessons=sum(1 for r in records if r.is_in_progress),
                total_time_spent=sum(r.time_spent_seconds for r in records),
                average_score=sum(scores) / len(scores) if scores else None,
            ),
        )

    # ==========================================================================
    # Certificates
    # ==========================================================================

    async def _handle_course_completion(
        self, enrollment: Enrollment, course: CourseStructure | None
    ) -> Enrollment:
        if not self.issue_certificates_inline:
            # CertificateIssuanceWorker picks up the CourseCompleted event
            return enrollment
        if course is None:
            logger.warning(
                "certificate_skipped_course_missing",
                enrollment_id=str(enrollment.id),
                course_id=str(enrollment.course_id),
            )
            return enrollment

        try:
            certificate = await self.certificate_issuer.issue(
                self._certificate_params(enrollment, course)
            )
        except ExternalServiceError as e:
            # Completion stands without a certificate
            logger.error(
                "certificate_issuance_failed",
                enrollment_id=str(enrollment.id),
                course_id=str(enrollment.course_id),
                error=e.message,
            )
            return enrollment

        try:
            return await self.attach_certificate(enrollment.id, certificate.id)
        except (ConcurrencyConflictError, InvalidStateError) as e:
            # Certificate exists upstream; the worker can attach it later
            logger.error(
                "certificate_attach_failed",
                enrollment_id=str(enrollment.id),
                certificate_id=certificate.id,
                error=e.message,
            )
            return enrollment

    async def certificate_params_for(
        self, enrollment_id: UUID
    ) -> IssueCertificateParams | None:
        """Issuance parameters, or None if the enrollment needs no certificate."""
        enrollment = await self.enrollments.find_by_id(enrollment_id)
        if enrollment is None or not enrollment.is_completed or enrollment.certificate_id:
            return None

        course = await self.courses.find_by_id(enrollment.course_id, enrollment.tenant_id)
        if course is None:
            return None

        return self._certificate_params(enrollment, course)

    async def attach_certificate(
        self, enrollment_id: UUID, certificate_id: str
    ) -> Enrollment:
        """Record an issued certificate on a completed enrollment."""
        enrollment, _ = await self._mutate(
            enrollment_id,
            None,
            lambda e, _course: e.attach_certificate(certificate_id),
        )
        logger.info(
            "certificate_issued",
            enrollment_id=str(enrollment_id),
            certificate_id=certificate_id,
        )
        return enrollment

    @staticmethod
    def _certificate_params(
        enrollment: Enrollment, course: CourseStructure
    ) -> IssueCertificateParams:
        return IssueCertificateParams(
            tenant_id=enrollment.tenant_id,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            enrollment_id=enrollment.id,
            course_name=course.title,
            completion_date=enrollment.completed_at or datetime.now(UTC),
            course_duration_minutes=round(course.total_duration_seconds / 60),
            score=enrollment.average_score,
            instructor_id=course.instructor_id,
        )

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get_enrollment_progress(
        self, enrollment_id: UUID, context: AccessContext
    ) -> ProgressSummary:
        enrollment = await self._load(enrollment_id)
        course = await self.courses.find_by_id(enrollment.course_id, enrollment.tenant_id)
        self._authorize(enrollment, course, context)
        enrollment = await self._expire_if_due(enrollment)

        if course is not None:
            modules = [
                ModuleProgressSummary.from_value(
                    enrollment.get_module_summary(module.id)
                    or ModuleProgress(module_id=module.id, total_lessons=len(module.lessons)),
                    title=module.title,
                )
                for module in course.modules
                if module.lessons
            ]
        else:
            modules = [
                ModuleProgressSummary.from_value(value)
                for value in enrollment.module_progress.values()
            ]

        completed = sorted(
            (lp for lp in enrollment.lesson_progress.values() if lp.is_completed),
            key=lambda lp: lp.completed_at or enrollment.enrolled_at,
            reverse=True,
        )
        recent = [
            RecentProgressItem(
                lesson_id=lp.lesson_id,
                lesson_title=course.lesson_title(lp.lesson_id) if course else None,
                status=lp.status,
                completed_at=lp.completed_at,
                score=lp.score,
                passed=lp.passed,
            )
            for lp in completed[: self.recent_limit]
        ]

        return ProgressSummary(
            enrollment_id=enrollment.id,
            course_id=enrollment.course_id,
            status=EnrollmentStatus(enrollment.status),
            completion_percentage=enrollment.completion_percentage.value,
            total_time_spent=enrollment.total_time_spent,
            last_accessed_at=enrollment.last_accessed_at,
            completed_at=enrollment.completed_at,
            certificate_id=enrollment.certificate_id,
            expires_at=enrollment.expires_at,
            days_until_expiration=enrollment.days_until_expiration,
            average_score=enrollment.average_score,
            modules=modules,
            recent_progress=recent,
        )

    async def get_course_enrollments(
        self, course_id: UUID, context: AccessContext
    ) -> list[Enrollment]:
        """List a course's enrollments (instructors: own courses; admins: tenant)."""
        if context.is_learner:
            raise AccessDeniedError

        course = await self.courses.find_by_id(course_id, context.tenant_id)
        if course is None:
            raise NotFoundError("Course not found")
        if context.is_instructor and course.instructor_id != context.user_id:
            raise AccessDeniedError

        enrollments = await self.enrollments.find_by_course_id(course_id, context.tenant_id)
        return [await self._expire_if_due(e) for e in enrollments]

    async def get_student_enrollments(
        self,
        student_id: UUID,
        context: AccessContext,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        if student_id != context.user_id and not context.is_admin:
            raise AccessDeniedError

        enrollments = await self.enrollments.find_by_student(student_id, context.tenant_id)
        enrollments = [await self._expire_if_due(e) for e in enrollments]

        if status is not None:
            enrollments = [e for e in enrollments if e.status == status.value]
        return enrollments

    # ==========================================================================
    # Administration
    # ==========================================================================

    async def suspend_enrollment(
        self,
        enrollment_id: UUID,
        context: AccessContext,
        reason: str | None = None,
    ) -> Enrollment:
        enrollment, _ = await self._mutate(
            enrollment_id,
            context,
            lambda e, _course: e.suspend(reason),
            manage=True,
        )
        logger.info("enrollment_suspended", enrollment_id=str(enrollment_id))
        return enrollment

    async def reactivate_enrollment(
        self, enrollment_id: UUID, context: AccessContext
    ) -> Enrollment:
        enrollment, _ = await self._mutate(
            enrollment_id,
            context,
            lambda e, _course: e.reactivate(),
            manage=True,
        )
        logger.info("enrollment_reactivated", enrollment_id=str(enrollment_id))
        return enrollment

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _load(self, enrollment_id: UUID) -> Enrollment:
        enrollment = await self.enrollments.find_by_id(enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment not found")
        return enrollment

    async def _expire_if_due(self, enrollment: Enrollment) -> Enrollment:
        """Persist a lazy expiry so it is observed once.

        Call only after the caller is authorized for the enrollment. Losing a
        save race twice is not an error: the expired copy is returned and the
        next load persists the transition.
        """
        if not enrollment.check_expiration():
            return enrollment

        try:
            await self.enrollments.save(enrollment)
        except ConcurrencyConflictError:
            reloaded = await self.enrollments.find_by_id(enrollment.id)
            if reloaded is None:
                raise NotFoundError("Enrollment not found") from None
            if not reloaded.check_expiration():
                return reloaded
            try:
                await self.enrollments.save(reloaded)
            except ConcurrencyConflictError:
                reloaded.pull_events()
                logger.warning("enrollment_expiry_deferred", enrollment_id=str(enrollment.id))
                return reloaded
            enrollment = reloaded

        logger.info(
            "enrollment_expired",
            enrollment_id=str(enrollment.id),
            expires_at=enrollment.expires_at.isoformat() if enrollment.expires_at else None,
        )
        await self._publish_events(enrollment)
        return enrollment

    def _authorize(
        self,
        enrollment: Enrollment,
        course: CourseStructure | None,
        context: AccessContext,
        manage: bool = False,
    ) -> None:
        """Raise AccessDeniedError unless the caller may touch the enrollment.

        ``manage`` restricts to administrative actions (suspend/reactivate).
        """
        if context.is_super_admin:
            return
        if enrollment.tenant_id != context.tenant_id:
            raise AccessDeniedError
        if context.is_admin:
            return

        owns_course = (
            context.is_instructor
            and course is not None
            and course.instructor_id == context.user_id
        )
        if owns_course:
            return
        if not manage and enrollment.student_id == context.user_id:
            return

        raise AccessDeniedError

    async def _mutate(
        self,
        enrollment_id: UUID,
        context: AccessContext | None,
        mutation: Mutation[T],
        manage: bool = False,
        with_course: bool = False,
    ):
        """Load, authorize, mutate, save and publish, retrying on conflicts.

        ``context=None`` is an internal system call and skips authorization.

        Returns:
            (enrollment, result), or ((enrollment, course), result) when
            ``with_course`` is set.
        """
        for attempt in range(1, self.max_save_retries + 1):
            enrollment = await self._load(enrollment_id)
            course = await self.courses.find_by_id(
                enrollment.course_id, enrollment.tenant_id
            )
            if context is not None:
                self._authorize(enrollment, course, context, manage=manage)
            enrollment = await self._expire_if_due(enrollment)

            result = mutation(enrollment, course)

            try:
                await self.enrollments.save(enrollment)
            except ConcurrencyConflictError:
                logger.warning(
                    "enrollment_save_conflict",
                    enrollment_id=str(enrollment_id),
                    attempt=attempt,
                    max_attempts=self.max_save_retries,
                )
                if attempt == self.max_save_retries:
                    raise
                continue

            await self._publish_events(enrollment)
            if with_course:
                return (enrollment, course), result
            return enrollment, result

        raise ConcurrencyConflictError

    async def _publish_events(self, enrollment: Enrollment) -> None:
        events = enrollment.pull_events()
        if events:
            await self.event_bus.publish_all(events)
