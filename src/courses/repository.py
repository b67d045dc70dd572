"""Course structure lookups consumed by progress tracking.

Provides:
- CourseRepository: the read contract (plus the enrollment counter)
- InMemoryCourseRepository: for local development and tests
- CassandraCourseRepository: reads the catalog tables
"""

from collections import defaultdict
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

import structlog

from .models import CourseStructure, LessonRef, ModuleStructure


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)


class CourseRepository(Protocol):
    """Read-only course structure plus the catalog enrollment counter."""

    async def find_by_id(
        self, course_id: UUID, tenant_id: UUID
    ) -> CourseStructure | None: ...

    async def increment_enrollment_count(
        self, course_id: UUID, tenant_id: UUID
    ) -> None: ...


class InMemoryCourseRepository:
    """Course structures held in a dict."""

    def __init__(self, courses: list[CourseStructure] | None = None):
        self._courses: dict[UUID, CourseStructure] = {}
        self.enrollment_counts: dict[UUID, int] = defaultdict(int)
        for course in courses or []:
            self.add(course)

    def add(self, course: CourseStructure) -> None:
        self._courses[course.id] = course

    async def find_by_id(
        self, course_id: UUID, tenant_id: UUID
    ) -> CourseStructure | None:
        course = self._courses.get(course_id)
        if course is None or course.tenant_id != tenant_id:
            return None
        return course

    async def increment_enrollment_count(
        self, course_id: UUID, tenant_id: UUID
    ) -> None:
        self.enrollment_counts[course_id] += 1


class CassandraCourseRepository:
    """Course structure read from the catalog's Cassandra tables."""

    def __init__(self, session: "Session", keyspace: str):
        """Initialize with Cassandra session."""
        self.session = session
        self.keyspace = keyspace
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for efficient execution."""
        self._get_course = self.session.prepare(f"""
            SELECT id, tenant_id, title, status, creator_id
            FROM {self.keyspace}.courses WHERE id = ?
        """)

        self._get_course_modules = self.session.prepare(f"""
            SELECT module_id FROM {self.keyspace}.course_modules
            WHERE course_id = ?
        """)

        self._get_module = self.session.prepare(f"""
            SELECT id, title FROM {self.keyspace}.modules WHERE id = ?
        """)

        self._get_module_lessons = self.session.prepare(f"""
            SELECT lesson_id FROM {self.keyspace}.module_lessons
            WHERE module_id = ?
        """)

        self._get_lessons = self.session.prepare(f"""
            SELECT id, title, duration_seconds FROM {self.keyspace}.lessons
            WHERE id IN ?
        """)

        self._increment_count = self.session.prepare(f"""
            UPDATE {self.keyspace}.course_enrollment_counts
            SET enrollment_count = enrollment_count + 1
            WHERE course_id = ?
        """)

    async def find_by_id(
        self, course_id: UUID, tenant_id: UUID
    ) -> CourseStructure | None:
        result = await self.session.aexecute(self._get_course, [course_id])
        row = result.one()
        if not row or row.tenant_id != tenant_id:
            return None

        module_rows = await self.session.aexecute(self._get_course_modules, [course_id])
        modules = [
            await self._load_module(module_row.module_id) for module_row in module_rows
        ]

        return CourseStructure(
            id=row.id,
            tenant_id=row.tenant_id,
            title=row.title or "",
            status=row.status,
            instructor_id=row.creator_id,
            modules=tuple(modules),
        )

    async def _load_module(self, module_id: UUID) -> ModuleStructure:
        result = await self.session.aexecute(self._get_module, [module_id])
        module_row = result.one()

        link_rows = await self.session.aexecute(self._get_module_lessons, [module_id])
        lesson_ids = [link.lesson_id for link in link_rows]

        lessons_by_id: dict[UUID, LessonRef] = {}
        if lesson_ids:
            lesson_rows = await self.session.aexecute(self._get_lessons, [lesson_ids])
            lessons_by_id = {
                r.id: LessonRef(
                    id=r.id,
                    title=r.title or "",
                    duration_seconds=r.duration_seconds or 0,
                )
                for r in lesson_rows
            }

        return ModuleStructure(
            id=module_id,
            title=module_row.title if module_row else "",
            # Keep the junction order; lessons missing in the catalog still count
            lessons=tuple(lessons_by_id.get(lid, LessonRef(id=lid)) for lid in lesson_ids),
        )

    async def increment_enrollment_count(
        self, course_id: UUID, tenant_id: UUID
    ) -> None:
        await self.session.aexecute(self._increment_count, [course_id])
        logger.debug(
            "course_enrollment_count_incremented",
            course_id=str(course_id),
            tenant_id=str(tenant_id),
        )
