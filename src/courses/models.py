"""Read model of the course catalog used by progress tracking.

The catalog service owns courses, modules and lessons. Progress tracking
only reads the structure (module/lesson ids, titles, durations) to seed and
validate enrollments and to recompute module progress, plus the course
status and instructor for enrollment and access checks.

The CQL below declares the subset of catalog columns this service reads and
the enrollment counter it writes. It is only applied to bootstrap local
environments; in production the catalog owns these tables.
"""

from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID


class ContentStatus(str, Enum):
    """Content publication status."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

COURSE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.courses (
    id UUID PRIMARY KEY,
    tenant_id UUID,
    title TEXT,
    status TEXT,
    creator_id UUID
)
"""

MODULE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.modules (
    id UUID PRIMARY KEY,
    title TEXT
)
"""

LESSON_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.lessons (
    id UUID PRIMARY KEY,
    title TEXT,
    duration_seconds INT
)
"""

COURSE_MODULES_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.course_modules (
    course_id UUID,
    module_id UUID,
    position INT,
    PRIMARY KEY (course_id, position, module_id)
) WITH CLUSTERING ORDER BY (position ASC, module_id ASC)
"""

MODULE_LESSONS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.module_lessons (
    module_id UUID,
    lesson_id UUID,
    position INT,
    PRIMARY KEY (module_id, position, lesson_id)
) WITH CLUSTERING ORDER BY (position ASC, lesson_id ASC)
"""

# Counter columns must live in a dedicated table
COURSE_ENROLLMENT_COUNTS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.course_enrollment_counts (
    course_id UUID PRIMARY KEY,
    enrollment_count COUNTER
)
"""

COURSES_TABLES_CQL = [
    COURSE_TABLE_CQL,
    MODULE_TABLE_CQL,
    LESSON_TABLE_CQL,
    COURSE_MODULES_TABLE_CQL,
    MODULE_LESSONS_TABLE_CQL,
    COURSE_ENROLLMENT_COUNTS_TABLE_CQL,
]


# ==============================================================================
# Structure
# ==============================================================================


@dataclass(frozen=True)
class LessonRef:
    """Lesson as seen from a module."""

    id: UUID
    title: str = ""
    duration_seconds: int = 0


@dataclass(frozen=True)
class ModuleStructure:
    """Ordered lessons of one module."""

    id: UUID
    title: str = ""
    lessons: tuple[LessonRef, ...] = ()

    @property
    def lesson_ids(self) -> list[UUID]:
        return [lesson.id for lesson in self.lessons]

    @property
    def total_duration_seconds(self) -> int:
        return sum(lesson.duration_seconds for lesson in self.lessons)


@dataclass(frozen=True)
class CourseStructure:
    """Course -> module -> lesson hierarchy for one tenant's course.

    Attributes:
        id: Course UUID
        tenant_id: Owning tenant
        title: Course title (printed on certificates)
        status: draft, published or archived
        instructor_id: Course owner, used for instructor access checks
        modules: Ordered modules
    """

    id: UUID
    tenant_id: UUID
    title: str
    status: str = ContentStatus.DRAFT.value
    instructor_id: UUID | None = None
    modules: tuple[ModuleStructure, ...] = field(default_factory=tuple)

    @property
    def is_published(self) -> bool:
        return self.status == ContentStatus.PUBLISHED.value

    @property
    def lesson_ids(self) -> list[UUID]:
        return [lesson_id for module in self.modules for lesson_id in module.lesson_ids]

    @property
    def total_lessons(self) -> int:
        return sum(len(module.lessons) for module in self.modules)

    @property
    def total_duration_seconds(self) -> int:
        return sum(module.total_duration_seconds for module in self.modules)

    def find_module_for_lesson(self, lesson_id: UUID) -> ModuleStructure | None:
        for module in self.modules:
            if lesson_id in module.lesson_ids:
                return module
        return None

    def lesson_title(self, lesson_id: UUID) -> str | None:
        for module in self.modules:
            for lesson in module.lessons:
                if lesson.id == lesson_id:
                    return lesson.title
        return None
