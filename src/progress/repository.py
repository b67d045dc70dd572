"""Enrollment persistence.

Provides:
- EnrollmentRepository: contract consumed by the service and by other
  bounded contexts (catalog enrollment counts, reporting)
- InMemoryEnrollmentRepository: local development and tests
- CassandraEnrollmentRepository: one row per aggregate, lookup tables for
  student/course/user queries

Both adapters implement optimistic concurrency: ``save`` only succeeds if
the stored version still equals the version the caller loaded, then bumps
it. A stale writer gets ConcurrencyConflictError instead of silently
overwriting the other writer's lesson map.

Both also allow at most one open (active or suspended) enrollment per
(tenant, student, course): a new one raises AlreadyExistsError.
"""

import asyncio
import copy
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

import orjson
import structlog

from .exceptions import AlreadyExistsError, ConcurrencyConflictError
from .models import Enrollment, EnrollmentStatus


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)


class EnrollmentRepository(Protocol):
    """Persistence contract for the Enrollment aggregate."""

    async def find_by_id(self, enrollment_id: UUID) -> Enrollment | None: ...

    async def save(self, enrollment: Enrollment) -> None:
        """Persist the aggregate; bumps ``enrollment.version`` on success.

        Raises:
            ConcurrencyConflictError: Stored version differs from the loaded one.
        """
        ...

    async def find_by_user_id(self, user_id: UUID) -> list[Enrollment]: ...

    async def find_by_course_id(
        self, course_id: UUID, tenant_id: UUID
    ) -> list[Enrollment]: ...

    async def find_by_user_and_course(
        self, user_id: UUID, course_id: UUID
    ) -> Enrollment | None: ...

    async def find_by_student_and_course(
        self, student_id: UUID, course_id: UUID, tenant_id: UUID
    ) -> Enrollment | None: ...

    async def find_by_student(
        self,
        student_id: UUID,
        tenant_id: UUID,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]: ...


def pick_current(enrollments: list[Enrollment]) -> Enrollment | None:
    """Prefer the open (active or suspended) enrollment, else the most recent."""
    if not enrollments:
        return None
    for enrollment in enrollments:
        if enrollment.is_open:
            return enrollment
    return max(enrollments, key=lambda e: e.enrolled_at)


def _newest_first(enrollments: list[Enrollment]) -> list[Enrollment]:
    return sorted(enrollments, key=lambda e: e.enrolled_at, reverse=True)


# ==============================================================================
# In-memory
# ==============================================================================


class InMemoryEnrollmentRepository:
    """Dict-backed repository storing detached copies of each aggregate."""

    def __init__(self) -> None:
        self._items: dict[UUID, Enrollment] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _detach(enrollment: Enrollment) -> Enrollment:
        clone = copy.deepcopy(enrollment)
        clone.pull_events()
        return clone

    async def find_by_id(self, enrollment_id: UUID) -> Enrollment | None:
        stored = self._items.get(enrollment_id)
        return self._detach(stored) if stored else None

    async def save(self, enrollment: Enrollment) -> None:
        async with self._lock:
            stored = self._items.get(enrollment.id)
            stored_version = stored.version if stored else 0

            if stored_version != enrollment.version:
                logger.warning(
                    "enrollment_version_conflict",
                    enrollment_id=str(enrollment.id),
                    expected_version=enrollment.version,
                    stored_version=stored_version,
                )
                raise ConcurrencyConflictError

            if stored is None and enrollment.is_open:
                self._ensure_single_open(enrollment)

            enrollment.version += 1
            self._items[enrollment.id] = self._detach(enrollment)

    def _ensure_single_open(self, enrollment: Enrollment) -> None:
        for other in self._items.values():
            if (
                other.is_open
                and other.tenant_id == enrollment.tenant_id
                and other.student_id == enrollment.student_id
                and other.course_id == enrollment.course_id
            ):
                raise AlreadyExistsError

    def _select(self, **criteria: Any) -> list[Enrollment]:
        matches = [
            self._detach(e)
            for e in self._items.values()
            if all(getattr(e, k) == v for k, v in criteria.items())
        ]
        return _newest_first(matches)

    async def find_by_user_id(self, user_id: UUID) -> list[Enrollment]:
        return self._select(student_id=user_id)

    async def find_by_course_id(
        self, course_id: UUID, tenant_id: UUID
    ) -> list[Enrollment]:
        return self._select(course_id=course_id, tenant_id=tenant_id)

    async def find_by_user_and_course(
        self, user_id: UUID, course_id: UUID
    ) -> Enrollment | None:
        return pick_current(self._select(student_id=user_id, course_id=course_id))

    async def find_by_student_and_course(
        self, student_id: UUID, course_id: UUID, tenant_id: UUID
    ) -> Enrollment | None:
        return pick_current(
            self._select(student_id=student_id, course_id=course_id, tenant_id=tenant_id)
        )

    async def find_by_student(
        self,
        student_id: UUID,
        tenant_id: UUID,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        enrollments = self._select(student_id=student_id, tenant_id=tenant_id)
        if status is not None:
            enrollments = [e for e in enrollments if e.status == status.value]
        return enrollments


# ==============================================================================
# Cassandra
# ==============================================================================


class CassandraEnrollmentRepository:
    """Cassandra-backed repository using lightweight transactions on version."""

    def __init__(self, session: "Session", keyspace: str):
        """Initialize with Cassandra session."""
        self.session = session
        self.keyspace = keyspace
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for efficient execution."""
        self._get_enrollment = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.enrollments WHERE id = ?
        """)

        self._get_enrollments = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.enrollments WHERE id IN ?
        """)

        self._insert_enrollment = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments
            (id, tenant_id, student_id, course_id, status, completion_percentage,
             total_time_spent, enrolled_at, last_accessed_at, completed_at,
             expires_at, certificate_id, suspension_reason, lesson_progress,
             module_progress, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            IF NOT EXISTS
        """)

        self._update_enrollment = self.session.prepare(f"""
            UPDATE {self.keyspace}.enrollments
            SET status = ?, completion_percentage = ?, total_time_spent = ?,
                last_accessed_at = ?, completed_at = ?, expires_at = ?,
                certificate_id = ?, suspension_reason = ?, lesson_progress = ?,
                module_progress = ?, version = ?
            WHERE id = ?
            IF version = ?
        """)

        self._claim_slot = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.active_enrollments
            (tenant_id, student_id, course_id, enrollment_id)
            VALUES (?, ?, ?, ?)
            IF NOT EXISTS
        """)

        self._release_slot = self.session.prepare(f"""
            DELETE FROM {self.keyspace}.active_enrollments
            WHERE tenant_id = ? AND student_id = ? AND course_id = ?
            IF enrollment_id = ?
        """)

        # Lookup tables (keys are immutable, written once at creation)
        self._insert_by_student = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments_by_student
            (tenant_id, student_id, enrolled_at, enrollment_id, course_id)
            VALUES (?, ?, ?, ?, ?)
        """)

        self._insert_by_course = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments_by_course
            (tenant_id, course_id, enrolled_at, enrollment_id, student_id)
            VALUES (?, ?, ?, ?, ?)
        """)

        self._insert_by_user = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments_by_user
            (student_id, enrolled_at, enrollment_id, tenant_id, course_id)
            VALUES (?, ?, ?, ?, ?)
        """)

        self._get_by_student = self.session.prepare(f"""
            SELECT enrollment_id, course_id FROM {self.keyspace}.enrollments_by_student
            WHERE tenant_id = ? AND student_id = ?
        """)

        self._get_by_course = self.session.prepare(f"""
            SELECT enrollment_id FROM {self.keyspace}.enrollments_by_course
            WHERE tenant_id = ? AND course_id = ?
        """)

        self._get_by_user = self.session.prepare(f"""
            SELECT enrollment_id, course_id FROM {self.keyspace}.enrollments_by_user
            WHERE student_id = ?
        """)

    # ==========================================================================
    # Reads
    # ==========================================================================

    @staticmethod
    def _from_row(row: Any) -> Enrollment:
        return Enrollment.from_row(
            row,
            lesson_progress=orjson.loads(row.lesson_progress or "{}"),
            module_progress=orjson.loads(row.module_progress or "{}"),
        )

    async def find_by_id(self, enrollment_id: UUID) -> Enrollment | None:
        result = await self.session.aexecute(self._get_enrollment, [enrollment_id])
        row = result.one()
        return self._from_row(row) if row else None

    async def _load_many(self, enrollment_ids: list[UUID]) -> list[Enrollment]:
        if not enrollment_ids:
            return []
        rows = await self.session.aexecute(self._get_enrollments, [enrollment_ids])
        return _newest_first([self._from_row(row) for row in rows])

    async def find_by_user_id(self, user_id: UUID) -> list[Enrollment]:
        rows = await self.session.aexecute(self._get_by_user, [user_id])
        return await self._load_many([row.enrollment_id for row in rows])

    async def find_by_course_id(
        self, course_id: UUID, tenant_id: UUID
    ) -> list[Enrollment]:
        rows = await self.session.aexecute(self._get_by_course, [tenant_id, course_id])
        return await self._load_many([row.enrollment_id for row in rows])

    async def find_by_user_and_course(
        self, user_id: UUID, course_id: UUID
    ) -> Enrollment | None:
        rows = await self.session.aexecute(self._get_by_user, [user_id])
        ids = [row.enrollment_id for row in rows if row.course_id == course_id]
        return pick_current(await self._load_many(ids))

    async def find_by_student_and_course(
        self, student_id: UUID, course_id: UUID, tenant_id: UUID
    ) -> Enrollment | None:
        rows = await self.session.aexecute(self._get_by_student, [tenant_id, student_id])
        ids = [row.enrollment_id for row in rows if row.course_id == course_id]
        return pick_current(await self._load_many(ids))

    async def find_by_student(
        self,
        student_id: UUID,
        tenant_id: UUID,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        rows = await self.session.aexecute(self._get_by_student, [tenant_id, student_id])
        enrollments = await self._load_many([row.enrollment_id for row in rows])
        if status is not None:
            enrollments = [e for e in enrollments if e.status == status.value]
        return enrollments

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def save(self, enrollment: Enrollment) -> None:
        lesson_doc = orjson.dumps(enrollment.lesson_progress_to_dict()).decode()
        module_doc = orjson.dumps(enrollment.module_progress_to_dict()).decode()
        next_version = enrollment.version + 1

        if enrollment.version == 0:
            if enrollment.is_open:
                await self._claim(enrollment)
            result = await self.session.aexecute(
                self._insert_enrollment,
                [
                    enrollment.id,
                    enrollment.tenant_id,
                    enrollment.student_id,
                    enrollment.course_id,
                    enrollment.status,
                    enrollment.completion_percentage.value,
                    enrollment.total_time_spent,
                    enrollment.enrolled_at,
                    enrollment.last_accessed_at,
                    enrollment.completed_at,
                    enrollment.expires_at,
                    enrollment.certificate_id,
                    enrollment.suspension_reason,
                    lesson_doc,
                    module_doc,
                    next_version,
                ],
            )
        else:
            result = await self.session.aexecute(
                self._update_enrollment,
                [
                    enrollment.status,
                    enrollment.completion_percentage.value,
                    enrollment.total_time_spent,
                    enrollment.last_accessed_at,
                    enrollment.completed_at,
                    enrollment.expires_at,
                    enrollment.certificate_id,
                    enrollment.suspension_reason,
                    lesson_doc,
                    module_doc,
                    next_version,
                    enrollment.id,
                    enrollment.version,
                ],
            )

        if not result.was_applied:
            logger.warning(
                "enrollment_version_conflict",
                enrollment_id=str(enrollment.id),
                expected_version=enrollment.version,
            )
            if enrollment.version == 0 and enrollment.is_open:
                await self._release(
                    enrollment.tenant_id, enrollment.student_id, enrollment.course_id, enrollment.id
                )
            raise ConcurrencyConflictError

        if enrollment.version == 0:
            await self._write_lookups(enrollment)
        elif not enrollment.is_open:
            await self._release(
                enrollment.tenant_id, enrollment.student_id, enrollment.course_id, enrollment.id
            )

        enrollment.version = next_version

    async def _claim(self, enrollment: Enrollment) -> None:
        """Claim the open-enrollment slot for (tenant, student, course).

        A slot still held by an enrollment that has since closed (its release
        was lost) is freed and claimed again once.

        Raises:
            AlreadyExistsError: Another open enrollment holds the slot
        """
        key = [enrollment.tenant_id, enrollment.student_id, enrollment.course_id]

        for _ in range(2):
            result = await self.session.aexecute(self._claim_slot, [*key, enrollment.id])
            if result.was_applied:
                return

            holder_id = result.one().enrollment_id
            holder = await self.find_by_id(holder_id)
            if holder is not None and holder.is_open:
                break

            logger.warning(
                "enrollment_slot_stale",
                enrollment_id=str(enrollment.id),
                holder_id=str(holder_id),
            )
            await self._release(*key, holder_id)

        logger.info(
            "enrollment_slot_taken",
            enrollment_id=str(enrollment.id),
            course_id=str(enrollment.course_id),
        )
        raise AlreadyExistsError

    async def _release(
        self, tenant_id: UUID, student_id: UUID, course_id: UUID, enrollment_id: UUID
    ) -> None:
        # Conditional: never frees a slot a newer enrollment has claimed
        await self.session.aexecute(
            self._release_slot, [tenant_id, student_id, course_id, enrollment_id]
        )

    async def _write_lookups(self, enrollment: Enrollment) -> None:
        """Write the lookup tables (dual-write after the main row)."""
        await self.session.aexecute(
            self._insert_by_student,
            [
                enrollment.tenant_id,
                enrollment.student_id,
                enrollment.enrolled_at,
                enrollment.id,
                enrollment.course_id,
            ],
        )
        await self.session.aexecute(
            self._insert_by_course,
            [
                enrollment.tenant_id,
                enrollment.course_id,
                enrollment.enrolled_at,
                enrollment.id,
                enrollment.student_id,
            ],
        )
        await self.session.aexecute(
            self._insert_by_user,
            [
                enrollment.student_id,
                enrollment.enrolled_at,
                enrollment.id,
                enrollment.tenant_id,
                enrollment.course_id,
            ],
        )
