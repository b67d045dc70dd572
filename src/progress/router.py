"""Enrollment and progress API endpoints.

Provides routes for:
- Enrollment (self, or on behalf of a student for admins)
- Lesson start and progress updates (including completion)
- Progress summaries
- Suspension / reactivation
- Course roster for instructors and admins
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from src.auth.dependencies import CurrentUser, InstructorOrAbove

from .dependencies import ProgressServiceDep, handle_progress_error
from .exceptions import ProgressError
from .models import EnrollmentStatus
from .schemas import (
    EnrollInCourseDto,
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollRequest,
    LessonProgressResponse,
    ProgressSummary,
    SuspendRequest,
    UpdateLessonProgressDto,
    UpdateLessonProgressRequest,
)


router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])
courses_router = APIRouter(prefix="/v1/courses", tags=["enrollments"])


def _list_response(enrollments: list) -> EnrollmentListResponse:
    items = [EnrollmentResponse.from_entity(e) for e in enrollments]
    return EnrollmentListResponse(items=items, total=len(items))


# ==============================================================================
# Enrollment Endpoints
# ==============================================================================


@router.post(
    "",
    response_model=EnrollmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enroll in course",
)
async def enroll(
    data: EnrollRequest,
    progress_service: ProgressServiceDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    """Enroll the caller in a published course.

    Admins may pass ``student_id`` to enroll someone else in their tenant.
    """
    dto = EnrollInCourseDto(
        tenant_id=user.tenant_id,
        student_id=data.student_id or user.user_id,
        course_id=data.course_id,
        payment_intent_id=data.payment_intent_id,
    )
    try:
        enrollment = await progress_service.enroll_in_course(dto, context=user)
        return EnrollmentResponse.from_entity(enrollment)
    except ProgressError as e:
        raise handle_progress_error(e) from e


@router.get(
    "/me",
    response_model=EnrollmentListResponse,
    summary="List my enrollments",
)
async def get_my_enrollments(
    progress_service: ProgressServiceDep,
    user: CurrentUser,
    enrollment_status: EnrollmentStatus | None = Query(default=None, alias="status"),
) -> EnrollmentListResponse:
    try:
        enrollments = await progress_service.get_student_enrollments(
            user.user_id, user, status=enrollment_status
        )
        return _list_response(enrollments)
    except ProgressError as e:
        raise handle_progress_error(e) from e


@router.get(
    "/{enrollment_id}/progress",
    response_model=ProgressSummary,
    summary="Get enrollment progress",
)
async def get_enrollment_progress(
    enrollment_id: UUID,
    progress_service: ProgressServiceDep,
    user: CurrentUser,
) -> ProgressSummary:
    """Course progress with module breakdown and recently completed lessons."""
    try:
        return await progress_service.get_enrollment_progress(enrollment_id, user)
    except ProgressError as e:
        raise handle_progress_error(e) from e


# ==============================================================================
# Lesson Progress Endpoints
# ==============================================================================


@router.post(
    "/{enrollment_id}/lessons/{lesson_id}/start",
    response_model=LessonProgressResponse,
    summary="Start lesson",
)
async def start_lesson(
    enrollment_id: UUID,
    lesson_id: UUID,
    progress_service: ProgressServiceDep,
    user: CurrentUser,
) -> LessonProgressResponse:
    try:
        progress = await progress_service.start_lesson(enrollment_id, lesson_id, user)
        return LessonProgressResponse.from_entity(progress)
    except ProgressError as e:
        raise handle_progress_error(e) from e


@router.put(
    "/{enrollment_id}/lessons/{lesson_id}/progress",
    response_model=EnrollmentResponse,
    summary="Update lesson progress",
)
async def update_lesson_progress(
    enrollment_id: UUID,
    lesson_id: UUID,
    data: UpdateLessonProgressRequest,
    progress_service: ProgressServiceDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    """Save video position, quiz answers, assignment or notes.

    With ``completed=true`` the lesson is marked complete (``score`` is
    graded against the passing score); completing the last lesson completes
    the course and requests a certificate.
    """
    dto = UpdateLessonProgressDto(lesson_id=lesson_id, **data.model_dump())
    try:
        enrollment = await progress_service.update_lesson_progress(
            enrollment_id, dto, user
        )
        return EnrollmentResponse.from_entity(enrollment)
    except ProgressError as e:
        raise handle_progress_error(e) from e


# ==============================================================================
# Administration Endpoints
# ==============================================================================


@router.post(
    "/{enrollment_id}/suspend",
    response_model=EnrollmentResponse,
    summary="Suspend enrollment",
)
async def suspend_enrollment(
    enrollment_id: UUID,
    progress_service: ProgressServiceDep,
    user: InstructorOrAbove,
    data: SuspendRequest | None = None,
) -> EnrollmentResponse:
    try:
        enrollment = await progress_service.suspend_enrollment(
            enrollment_id, user, reason=data.reason if data else None
        )
        return EnrollmentResponse.from_entity(enrollment)
    except ProgressError as e:
        raise handle_progress_error(e) from e


@router.post(
    "/{enrollment_id}/reactivate",
    response_model=EnrollmentResponse,
    summary="Reactivate enrollment",
)
async def reactivate_enrollment(
    enrollment_id: UUID,
    progress_service: ProgressServiceDep,
    user: InstructorOrAbove,
) -> EnrollmentResponse:
    try:
        enrollment = await progress_service.reactivate_enrollment(enrollment_id, user)
        return EnrollmentResponse.from_entity(enrollment)
    except ProgressError as e:
        raise handle_progress_error(e) from e


@courses_router.get(
    "/{course_id}/enrollments",
    response_model=EnrollmentListResponse,
    summary="List course enrollments",
)
async def get_course_enrollments(
    course_id: UUID,
    progress_service: ProgressServiceDep,
    user: CurrentUser,
) -> EnrollmentListResponse:
    """Instructors see their own courses; admins see every course in the tenant."""
    try:
        enrollments = await progress_service.get_course_enrollments(course_id, user)
        return _list_response(enrollments)
    except ProgressError as e:
        raise handle_progress_error(e) from e
