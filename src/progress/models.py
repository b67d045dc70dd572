"""Enrollment aggregate and progress value objects.

The Enrollment is the consistency boundary for one student's progress in one
course. It owns:
- Lesson progress: one LessonProgress entity per lesson the student touched
  (or that was seeded at enrollment time)
- Module progress: cached ModuleProgress projections pushed in by the service

Cassandra table definitions live here too. The whole aggregate is stored as
one row (child maps as JSON documents) so a save is a single conditional
write guarded by ``version``.
"""

import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .events import (
    CertificateIssuedEvent,
    CourseCompletedEvent,
    DomainEvent,
    EnrollmentCreatedEvent,
    EnrollmentExpiredEvent,
    LessonCompletedEvent,
    ModuleCompletedEvent,
)
from .exceptions import InvalidStateError, NotFoundError


PASSING_SCORE = 70


class EnrollmentStatus(str, Enum):
    """Course enrollment status."""

    ACTIVE = "active"
    COMPLETED = "completed"  # Terminal
    EXPIRED = "expired"  # Terminal, detected lazily on access
    SUSPENDED = "suspended"  # Reversible


class LessonProgressStatus(str, Enum):
    """Lesson progress status (forward-only)."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# ==============================================================================
# Helper Functions
# ==============================================================================


def ensure_utc_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is UTC-aware (Cassandra returns naive datetimes)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _parse_dt(value: str | None) -> datetime | None:
    return ensure_utc_aware(datetime.fromisoformat(value)) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

# Aggregate row. lesson_progress / module_progress are JSON documents keyed
# by lesson_id / module_id; version is compared on every save (LWT).
ENROLLMENTS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments (
    id UUID PRIMARY KEY,
    tenant_id UUID,
    student_id UUID,
    course_id UUID,
    status TEXT,
    completion_percentage INT,
    total_time_spent INT,
    enrolled_at TIMESTAMP,
    last_accessed_at TIMESTAMP,
    completed_at TIMESTAMP,
    expires_at TIMESTAMP,
    certificate_id TEXT,
    suspension_reason TEXT,
    lesson_progress TEXT,
    module_progress TEXT,
    version INT
)
"""

# Lookup: enrollments of a student inside a tenant
ENROLLMENTS_BY_STUDENT_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments_by_student (
    tenant_id UUID,
    student_id UUID,
    enrolled_at TIMESTAMP,
    enrollment_id UUID,
    course_id UUID,
    PRIMARY KEY ((tenant_id, student_id), enrolled_at, enrollment_id)
) WITH CLUSTERING ORDER BY (enrolled_at DESC, enrollment_id ASC)
"""

# Lookup: enrollments of a course inside a tenant
ENROLLMENTS_BY_COURSE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments_by_course (
    tenant_id UUID,
    course_id UUID,
    enrolled_at TIMESTAMP,
    enrollment_id UUID,
    student_id UUID,
    PRIMARY KEY ((tenant_id, course_id), enrolled_at, enrollment_id)
) WITH CLUSTERING ORDER BY (enrolled_at DESC, enrollment_id ASC)
"""

# Lookup: enrollments of a user across tenants (platform-level queries)
ENROLLMENTS_BY_USER_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments_by_user (
    student_id UUID,
    enrolled_at TIMESTAMP,
    enrollment_id UUID,
    tenant_id UUID,
    course_id UUID,
    PRIMARY KEY (student_id, enrolled_at, enrollment_id)
) WITH CLUSTERING ORDER BY (enrolled_at DESC, enrollment_id ASC)
"""

# One row per open (active or suspended) enrollment; claimed with
# IF NOT EXISTS, released with IF enrollment_id = ? once it closes
ACTIVE_ENROLLMENTS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.active_enrollments (
    tenant_id UUID,
    student_id UUID,
    course_id UUID,
    enrollment_id UUID,
    PRIMARY KEY ((tenant_id, student_id, course_id))
)
"""

PROGRESS_TABLES_CQL = [
    ENROLLMENTS_TABLE_CQL,
    ENROLLMENTS_BY_STUDENT_TABLE_CQL,
    ENROLLMENTS_BY_COURSE_TABLE_CQL,
    ENROLLMENTS_BY_USER_TABLE_CQL,
    ACTIVE_ENROLLMENTS_TABLE_CQL,
]


# ==============================================================================
# Value Objects
# ==============================================================================


@dataclass(frozen=True)
class ProgressPercentage:
    """Whole-number percentage in [0, 100]."""

    value: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.value <= 100:
            msg = "Progress percentage must be between 0 and 100"
            raise ValueError(msg)

    @classmethod
    def from_fraction(cls, completed: int, total: int) -> "ProgressPercentage":
        """Round half up, like the catalog displays it."""
        if total == 0:
            return cls(0)
        ratio = Decimal(100 * completed) / Decimal(total)
        return cls(int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP)))

    @property
    def is_complete(self) -> bool:
        return self.value == 100

    def __str__(self) -> str:
        return f"{self.value}%"


@dataclass(frozen=True)
class AssignmentSubmission:
    """Learner's submission for an assignment lesson."""

    submitted_at: datetime
    content: Any
    attachments: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "submitted_at": _iso(self.submitted_at),
            "content": self.content,
            "attachments": list(self.attachments),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssignmentSubmission":
        return cls(
            submitted_at=_parse_dt(data["submitted_at"]) or datetime.now(UTC),
            content=data.get("content"),
            attachments=tuple(data.get("attachments") or ()),
        )


@dataclass(frozen=True)
class LessonProgressData:
    """Snapshot of in-lesson state (video position, quiz, assignment).

    Never mutated: ``merged`` returns a new snapshot where every supplied
    field replaces the previous value as a whole (no deep merge).
    """

    video_position: float | None = None
    quiz_answers: dict[str, Any] | None = None
    assignment_submission: AssignmentSubmission | None = None
    notes: str | None = None

    def merged(self, **changes: Any) -> "LessonProgressData":
        supplied = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **supplied)

    @property
    def has_video_progress(self) -> bool:
        return self.video_position is not None and self.video_position > 0

    @property
    def has_quiz_answers(self) -> bool:
        return bool(self.quiz_answers)

    @property
    def has_assignment_submission(self) -> bool:
        return self.assignment_submission is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "video_position": self.video_position,
            "quiz_answers": self.quiz_answers,
            "assignment_submission": self.assignment_submission.to_dict()
            if self.assignment_submission
            else None,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LessonProgressData":
        if not data:
            return cls()
        submission = data.get("assignment_submission")
        return cls(
            video_position=data.get("video_position"),
            quiz_answers=data.get("quiz_answers"),
            assignment_submission=AssignmentSubmission.from_dict(submission)
            if submission
            else None,
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class ModuleProgress:
    """Projection of one module's lessons; recomputed, never authoritative."""

    module_id: UUID
    total_lessons: int
    completed_lessons: int = 0
    in_progress_lessons: int = 0
    total_time_spent: int = 0
    average_score: float | None = None

    @property
    def progress_percentage(self) -> ProgressPercentage:
        return ProgressPercentage.from_fraction(
            self.completed_lessons, self.total_lessons
        )

    @property
    def is_complete(self) -> bool:
        return self.completed_lessons == self.total_lessons

    @property
    def is_started(self) -> bool:
        return self.completed_lessons > 0 or self.in_progress_lessons > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "module_id": str(self.module_id),
            "total_lessons": self.total_lessons,
            "completed_lessons": self.completed_lessons,
            "in_progress_lessons": self.in_progress_lessons,
            "total_time_spent": self.total_time_spent,
            "average_score": self.average_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModuleProgress":
        return cls(
            module_id=UUID(data["module_id"]),
            total_lessons=data["total_lessons"],
            completed_lessons=data.get("completed_lessons", 0),
            in_progress_lessons=data.get("in_progress_lessons", 0),
            total_time_spent=data.get("total_time_spent", 0),
            average_score=data.get("average_score"),
        )


# ==============================================================================
# Entity Classes
# ==============================================================================


class LessonProgress:
    """Progress of one lesson, owned by an Enrollment.

    Attributes:
        id: Record UUID
        lesson_id: Lesson UUID
        status: not_started, in_progress or completed (forward-only)
        started_at: Last time the lesson moved to in_progress
        completed_at: Completion timestamp
        time_spent_seconds: Accumulated time on the lesson
        attempts: Number of times the lesson was started
        score: Graded score, if any
        passed: score >= passing score; True for ungraded lessons
        progress_data: Immutable in-lesson snapshot
    """

    def __init__(
        self,
        lesson_id: UUID,
        id: UUID | None = None,
        status: str = LessonProgressStatus.NOT_STARTED.value,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        time_spent_seconds: int = 0,
        attempts: int = 0,
        score: float | None = None,
        passed: bool | None = None,
        progress_data: LessonProgressData | None = None,
    ):
        self.id = id or uuid4()
        self.lesson_id = lesson_id
        self.status = status
        self.started_at = ensure_utc_aware(started_at)
        self.completed_at = ensure_utc_aware(completed_at)
        self.time_spent_seconds = time_spent_seconds
        self.attempts = attempts
        self.score = score
        self.passed = passed
        self.progress_data = progress_data or LessonProgressData()

    @property
    def is_completed(self) -> bool:
        return self.status == LessonProgressStatus.COMPLETED.value

    @property
    def is_in_progress(self) -> bool:
        return self.status == LessonProgressStatus.IN_PROGRESS.value

    @property
    def is_not_started(self) -> bool:
        return self.status == LessonProgressStatus.NOT_STARTED.value

    def start(self, now: datetime) -> None:
        """Move not_started -> in_progress; no-op otherwise."""
        if not self.is_not_started:
            return
        self.status = LessonProgressStatus.IN_PROGRESS.value
        self.started_at = now
        self.attempts += 1

    def update_progress(self, data: LessonProgressData, now: datetime) -> None:
        self.progress_data = data
        if self.is_not_started:
            self.start(now)

    def add_time_spent(self, seconds: int) -> None:
        self.time_spent_seconds += seconds

    def complete(
        self,
        now: datetime,
        score: float | None = None,
        passing_score: int = PASSING_SCORE,
    ) -> bool:
        """Mark completed. Returns False if it already was."""
        if self.is_completed:
            return False

        self.status = LessonProgressStatus.COMPLETED.value
        self.completed_at = now
        if self.started_at is None:
            self.started_at = now

        if score is not None:
            self.score = score
            self.passed = score >= passing_score
        else:
            self.passed = True
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "lesson_id": str(self.lesson_id),
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "time_spent_seconds": self.time_spent_seconds,
            "attempts": self.attempts,
            "score": self.score,
            "passed": self.passed,
            "progress_data": self.progress_data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LessonProgress":
        return cls(
            id=UUID(data["id"]),
            lesson_id=UUID(data["lesson_id"]),
            status=data.get("status") or LessonProgressStatus.NOT_STARTED.value,
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            time_spent_seconds=data.get("time_spent_seconds", 0),
            attempts=data.get("attempts", 0),
            score=data.get("score"),
            passed=data.get("passed"),
            progress_data=LessonProgressData.from_dict(data.get("progress_data")),
        )

    def __repr__(self) -> str:
        return f"<LessonProgress lesson={self.lesson_id} {self.status}>"


class Enrollment:
    """Aggregate root: one student's registration and progress in one course.

    State machine: active -> completed (terminal), active <-> suspended,
    active/suspended -> expired (terminal, lazy). completion_percentage never
    decreases. Mutations record domain events, drained with ``pull_events``.
    """

    def __init__(
        self,
        id: UUID,
        tenant_id: UUID,
        student_id: UUID,
        course_id: UUID,
        status: str = EnrollmentStatus.ACTIVE.value,
        completion_percentage: int = 0,
        total_time_spent: int = 0,
        enrolled_at: datetime | None = None,
        last_accessed_at: datetime | None = None,
        completed_at: datetime | None = None,
        expires_at: datetime | None = None,
        certificate_id: str | None = None,
        suspension_reason: str | None = None,
        lesson_progress: dict[UUID, LessonProgress] | None = None,
        module_progress: dict[UUID, ModuleProgress] | None = None,
        version: int = 0,
    ):
        self.id = id
        self.tenant_id = tenant_id
        self.student_id = student_id
        self.course_id = course_id
        self.status = status
        self.completion_percentage = ProgressPercentage(completion_percentage)
        self.total_time_spent = total_time_spent
        self.enrolled_at = ensure_utc_aware(enrolled_at) or datetime.now(UTC)
        self.last_accessed_at = ensure_utc_aware(last_accessed_at)
        self.completed_at = ensure_utc_aware(completed_at)
        self.expires_at = ensure_utc_aware(expires_at)
        self.certificate_id = certificate_id
        self.suspension_reason = suspension_reason
        self.lesson_progress: dict[UUID, LessonProgress] = lesson_progress or {}
        self.module_progress: dict[UUID, ModuleProgress] = module_progress or {}
        self.version = version
        self._events: list[DomainEvent] = []

    @classmethod
    def create(
        cls,
        tenant_id: UUID,
        student_id: UUID,
        course_id: UUID,
        expires_at: datetime | None = None,
    ) -> "Enrollment":
        """Start a new active enrollment at 0%."""
        enrollment = cls(
            id=uuid4(),
            tenant_id=tenant_id,
            student_id=student_id,
            course_id=course_id,
            expires_at=expires_at,
        )
        enrollment._record(EnrollmentCreatedEvent)
        return enrollment

    # ==========================================================================
    # Lesson Operations
    # ==========================================================================

    def seed_lessons(self, lesson_ids: list[UUID]) -> None:
        """Create not_started placeholders so every course lesson counts."""
        for lesson_id in lesson_ids:
            if lesson_id not in self.lesson_progress:
                self.lesson_progress[lesson_id] = LessonProgress(lesson_id=lesson_id)

    def start_lesson(self, lesson_id: UUID) -> LessonProgress:
        self._ensure_accepts_activity()
        now = datetime.now(UTC)

        progress = self.lesson_progress.get(lesson_id)
        if progress is None:
            progress = LessonProgress(lesson_id=lesson_id)
            self.lesson_progress[lesson_id] = progress

        progress.start(now)
        self.last_accessed_at = now
        return progress

    def update_lesson_progress(
        self,
        lesson_id: UUID,
        data: dict[str, Any] | None = None,
        time_spent: int | None = None,
    ) -> LessonProgress:
        """Merge new in-lesson data and accumulate time spent.

        Raises:
            InvalidStateError: No progress record yet (start the lesson first)
                or the enrollment does not accept activity.
        """
        self._ensure_accepts_activity()
        progress = self.lesson_progress.get(lesson_id)
        if progress is None:
            msg = "Lesson progress not found. Start the lesson first."
            raise InvalidStateError(msg)

        # Built before touching state so a bad field leaves the aggregate as-is
        snapshot = progress.progress_data.merged(**(data or {}))
        now = datetime.now(UTC)

        progress.update_progress(snapshot, now)
        if time_spent:
            progress.add_time_spent(time_spent)
            self.total_time_spent += time_spent

        self.last_accessed_at = now
        return progress

    def complete_lesson(
        self,
        lesson_id: UUID,
        score: float | None = None,
        passing_score: int = PASSING_SCORE,
    ) -> bool:
        """Complete a lesson. Returns True only on the first completion.

        Raises:
            NotFoundError: The lesson has no progress record.
        """
        self._ensure_accepts_activity()
        progress = self.lesson_progress.get(lesson_id)
        if progress is None:
            msg = "Lesson progress not found"
            raise NotFoundError(msg)

        now = datetime.now(UTC)
        first_completion = progress.complete(now, score, passing_score)

        if first_completion:
            self._record(
                LessonCompletedEvent,
                lesson_id=lesson_id,
                completed_at=now,
                score=progress.score,
                passed=bool(progress.passed),
            )
            self._recalculate_progress()

        self.last_accessed_at = now
        return first_completion

    # ==========================================================================
    # Module and Course Operations
    # ==========================================================================

    def update_module_progress(self, module_id: UUID, snapshot: ModuleProgress) -> None:
        """Cache a recomputed module projection."""
        previous = self.module_progress.get(module_id)
        self.module_progress[module_id] = snapshot

        if snapshot.is_complete and not (previous and previous.is_complete):
            self._record(
                ModuleCompletedEvent,
                module_id=module_id,
                completed_at=datetime.now(UTC),
            )

    def mark_as_completed(self, certificate_id: str | None = None) -> None:
        if self.is_completed:
            return

        self.status = EnrollmentStatus.COMPLETED.value
        self.completed_at = datetime.now(UTC)
        self.completion_percentage = ProgressPercentage(100)
        if certificate_id:
            self.certificate_id = certificate_id

        self._record(
            CourseCompletedEvent,
            completed_at=self.completed_at,
            certificate_issued=certificate_id is not None,
        )

    def attach_certificate(self, certificate_id: str) -> None:
        """Link the certificate issued for a completed enrollment."""
        if not self.is_completed:
            msg = "Certificates can only be attached to completed enrollments"
            raise InvalidStateError(msg)
        if self.certificate_id == certificate_id:
            return
        if self.certificate_id is not None:
            msg = "Enrollment already has a certificate"
            raise InvalidStateError(msg)

        self.certificate_id = certificate_id
        self._record(CertificateIssuedEvent, certificate_id=certificate_id)

    # ==========================================================================
    # Status Transitions
    # ==========================================================================

    def suspend(self, reason: str | None = None) -> None:
        if not self.is_active:
            msg = f"Cannot suspend an enrollment that is {self.status}"
            raise InvalidStateError(msg)
        self.status = EnrollmentStatus.SUSPENDED.value
        self.suspension_reason = reason

    def reactivate(self) -> None:
        if self.status != EnrollmentStatus.SUSPENDED.value:
            msg = "Can only reactivate suspended enrollments"
            raise InvalidStateError(msg)
        self.status = EnrollmentStatus.ACTIVE.value
        self.suspension_reason = None
        self.last_accessed_at = datetime.now(UTC)

    def check_expiration(self, now: datetime | None = None) -> bool:
        """Expire the enrollment if its access window has passed.

        Returns True when this call performed the transition.
        """
        # Suspension does not stop the clock: a suspended enrollment whose
        # window passed can no longer be reactivated.
        if self.expires_at is None or not self.is_open:
            return False
        if (now or datetime.now(UTC)) <= self.expires_at:
            return False

        self.status = EnrollmentStatus.EXPIRED.value
        self._record(EnrollmentExpiredEvent, expires_at=self.expires_at)
        return True

    # ==========================================================================
    # Queries
    # ==========================================================================

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE.value

    @property
    def is_completed(self) -> bool:
        return self.status == EnrollmentStatus.COMPLETED.value

    @property
    def is_open(self) -> bool:
        """Active or suspended: no second enrollment in the course is allowed."""
        return self.status in (
            EnrollmentStatus.ACTIVE.value,
            EnrollmentStatus.SUSPENDED.value,
        )

    @property
    def completed_lessons_count(self) -> int:
        return sum(1 for lp in self.lesson_progress.values() if lp.is_completed)

    @property
    def days_until_expiration(self) -> int | None:
        if self.expires_at is None:
            return None
        remaining = self.expires_at - datetime.now(UTC)
        return math.ceil(remaining.total_seconds() / 86400)

    @property
    def average_score(self) -> float | None:
        scores = [
            lp.score for lp in self.lesson_progress.values() if lp.score is not None
        ]
        if not scores:
            return None
        return sum(scores) / len(scores)

    def get_lesson_progress(self, lesson_id: UUID) -> LessonProgress | None:
        return self.lesson_progress.get(lesson_id)

    def get_module_summary(self, module_id: UUID) -> ModuleProgress | None:
        return self.module_progress.get(module_id)

    @property
    def pending_events(self) -> list[DomainEvent]:
        return list(self._events)

    def pull_events(self) -> list[DomainEvent]:
        """Return recorded events and forget them."""
        events, self._events = self._events, []
        return events

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _ensure_accepts_activity(self) -> None:
        if self.status in (
            EnrollmentStatus.SUSPENDED.value,
            EnrollmentStatus.EXPIRED.value,
        ):
            msg = f"Enrollment is {self.status}"
            raise InvalidStateError(msg)

    def _recalculate_progress(self) -> None:
        computed = ProgressPercentage.from_fraction(
            self.completed_lessons_count, len(self.lesson_progress)
        )
        # Lessons tracked after enrollment grow the denominator; never go back
        if computed.value > self.completion_percentage.value:
            self.completion_percentage = computed

        if self.completion_percentage.is_complete and self.is_active:
            self.mark_as_completed()

    def _record(self, event_cls: type[DomainEvent], **data: Any) -> None:
        self._events.append(
            event_cls(
                aggregate_id=self.id,
                tenant_id=self.tenant_id,
                student_id=self.student_id,
                course_id=self.course_id,
                **data,
            )
        )

    # ==========================================================================
    # Serialization
    # ==========================================================================

    def lesson_progress_to_dict(self) -> dict[str, Any]:
        return {str(k): v.to_dict() for k, v in self.lesson_progress.items()}

    def module_progress_to_dict(self) -> dict[str, Any]:
        return {str(k): v.to_dict() for k, v in self.module_progress.items()}

    @classmethod
    def from_row(
        cls,
        row: Any,
        lesson_progress: dict[str, Any],
        module_progress: dict[str, Any],
    ) -> "Enrollment":
        """Create Enrollment from a Cassandra row and its decoded documents."""
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            student_id=row.student_id,
            course_id=row.course_id,
            status=row.status or EnrollmentStatus.ACTIVE.value,
            completion_percentage=row.completion_percentage or 0,
            total_time_spent=row.total_time_spent or 0,
            enrolled_at=row.enrolled_at,
            last_accessed_at=row.last_accessed_at,
            completed_at=row.completed_at,
            expires_at=row.expires_at,
            certificate_id=row.certificate_id,
            suspension_reason=row.suspension_reason,
            lesson_progress={
                UUID(k): LessonProgress.from_dict(v) for k, v in lesson_progress.items()
            },
            module_progress={
                UUID(k): ModuleProgress.from_dict(v) for k, v in module_progress.items()
            },
            version=row.version or 0,
        )

    def __repr__(self) -> str:
        return (
            f"<Enrollment student={self.student_id} course={self.course_id} "
            f"{self.status} {self.completion_percentage}>"
        )
