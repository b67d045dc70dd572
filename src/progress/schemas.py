"""Pydantic schemas for enrollment and progress tracking.

Request and response models for:
- Enrollment
- Lesson progress updates (video position, quiz, assignment, completion)
- Progress summaries
- Enrollment administration (suspend / reactivate)
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    Enrollment,
    EnrollmentStatus,
    LessonProgress,
    LessonProgressStatus,
    ModuleProgress,
)


# ==============================================================================
# Enrollment Schemas
# ==============================================================================


class EnrollRequest(BaseModel):
    """Enroll the caller (or, for admins, another student) in a course."""

    course_id: UUID = Field(..., description="Course UUID")
    student_id: UUID | None = Field(
        default=None, description="Student to enroll (admins only, defaults to caller)"
    )
    payment_intent_id: str | None = Field(
        default=None, max_length=255, description="Checkout reference"
    )


class EnrollInCourseDto(BaseModel):
    tenant_id: UUID
    student_id: UUID
    course_id: UUID
    payment_intent_id: str | None = None


class EnrollmentResponse(BaseModel):
    """Enrollment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    student_id: UUID
    course_id: UUID
    status: EnrollmentStatus
    completion_percentage: int = Field(ge=0, le=100)
    completed_lessons: int = 0
    total_time_spent: int = 0
    enrolled_at: datetime
    last_accessed_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    certificate_id: str | None = None
    suspension_reason: str | None = None

    @classmethod
    def from_entity(cls, entity: Enrollment) -> "EnrollmentResponse":
        return cls(
            id=entity.id,
            tenant_id=entity.tenant_id,
            student_id=entity.student_id,
            course_id=entity.course_id,
            status=EnrollmentStatus(entity.status),
            completion_percentage=entity.completion_percentage.value,
            completed_lessons=entity.completed_lessons_count,
            total_time_spent=entity.total_time_spent,
            enrolled_at=entity.enrolled_at,
            last_accessed_at=entity.last_accessed_at,
            completed_at=entity.completed_at,
            expires_at=entity.expires_at,
            certificate_id=entity.certificate_id,
            suspension_reason=entity.suspension_reason,
        )


class EnrollmentListResponse(BaseModel):
    items: list[EnrollmentResponse]
    total: int


class SuspendRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# ==============================================================================
# Lesson Progress Schemas
# ==============================================================================


class AssignmentSubmissionInput(BaseModel):
    """Assignment content; submitted_at is stamped by the server."""

    content: Any
    attachments: list[str] = Field(default_factory=list, max_length=20)


class UpdateLessonProgressRequest(BaseModel):
    """Partial lesson progress update.

    Only supplied fields replace the stored snapshot. ``completed`` marks the
    lesson complete after the update is applied.
    """

    video_position: float | None = Field(
        default=None, ge=0, description="Video position in seconds"
    )
    quiz_answers: dict[str, Any] | None = None
    assignment_submission: AssignmentSubmissionInput | None = None
    notes: str | None = Field(default=None, max_length=10000)
    time_spent: int | None = Field(
        default=None, ge=0, description="Seconds spent since the last update"
    )
    completed: bool = False
    score: float | None = Field(default=None, ge=0, le=100)


class UpdateLessonProgressDto(UpdateLessonProgressRequest):
    lesson_id: UUID


class LessonProgressResponse(BaseModel):
    """Lesson progress response."""

    lesson_id: UUID
    status: LessonProgressStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    time_spent_seconds: int = 0
    attempts: int = 0
    score: float | None = None
    passed: bool | None = None
    video_position: float | None = None
    has_quiz_answers: bool = False
    has_assignment_submission: bool = False

    @classmethod
    def from_entity(cls, entity: LessonProgress) -> "LessonProgressResponse":
        data = entity.progress_data
        return cls(
            lesson_id=entity.lesson_id,
            status=LessonProgressStatus(entity.status),
            started_at=entity.started_at,
            completed_at=entity.completed_at,
            time_spent_seconds=entity.time_spent_seconds,
            attempts=entity.attempts,
            score=entity.score,
            passed=entity.passed,
            video_position=data.video_position,
            has_quiz_answers=data.has_quiz_answers,
            has_assignment_submission=data.has_assignment_submission,
        )


# ==============================================================================
# Progress Summary Schemas
# ==============================================================================


class ModuleProgressSummary(BaseModel):
    module_id: UUID
    title: str | None = None
    total_lessons: int
    completed_lessons: int
    in_progress_lessons: int
    progress_percentage: int = Field(ge=0, le=100)
    total_time_spent: int = 0
    average_score: float | None = None
    is_complete: bool = False

    @classmethod
    def from_value(
        cls, value: ModuleProgress, title: str | None = None
    ) -> "ModuleProgressSummary":
        return cls(
            module_id=value.module_id,
            title=title,
            total_lessons=value.total_lessons,
            completed_lessons=value.completed_lessons,
            in_progress_lessons=value.in_progress_lessons,
            progress_percentage=value.progress_percentage.value,
            total_time_spent=value.total_time_spent,
            average_score=value.average_score,
            is_complete=value.is_complete,
        )


class RecentProgressItem(BaseModel):
    lesson_id: UUID
    lesson_title: str | None = None
    status: LessonProgressStatus
    completed_at: datetime | None = None
    score: float | None = None
    passed: bool | None = None


class ProgressSummary(BaseModel):
    """Progress of one enrollment, module by module."""

    enrollment_id: UUID
    course_id: UUID
    status: EnrollmentStatus
    completion_percentage: int = Field(ge=0, le=100)
    total_time_spent: int = 0
    last_accessed_at: datetime | None = None
    completed_at: datetime | None = None
    certificate_id: str | None = None
    expires_at: datetime | None = None
    days_until_expiration: int | None = None
    average_score: float | None = None
    modules: list[ModuleProgressSummary] = Field(default_factory=list)
    recent_progress: list[RecentProgressItem] = Field(default_factory=list)


class MessageResponse(BaseModel):
    message: str
