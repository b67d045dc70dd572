"""Course structure read model consumed by progress tracking."""

from .models import (
    COURSES_TABLES_CQL,
    ContentStatus,
    CourseStructure,
    LessonRef,
    ModuleStructure,
)
from .repository import (
    CassandraCourseRepository,
    CourseRepository,
    InMemoryCourseRepository,
)


__all__ = [
    "COURSES_TABLES_CQL",
    "CassandraCourseRepository",
    "ContentStatus",
    "CourseRepository",
    "CourseStructure",
    "InMemoryCourseRepository",
    "LessonRef",
    "ModuleStructure",
]
