"""Persona-based access control.

Hierarchical personas:
- SUPER_ADMIN (level 4): Platform operator, crosses tenants
- ADMIN (level 3): Full access inside one tenant
- INSTRUCTOR (level 2): Manages own courses and sees their learners
- LEARNER (level 1): Own enrollments and progress only
"""

from enum import Enum


class Persona(str, Enum):
    """User personas, higher level = more permissions."""

    LEARNER = "learner"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


PERSONA_HIERARCHY: dict[Persona, int] = {
    Persona.LEARNER: 1,
    Persona.INSTRUCTOR: 2,
    Persona.ADMIN: 3,
    Persona.SUPER_ADMIN: 4,
}


def get_persona_level(persona: Persona | str) -> int:
    """Get the permission level for a persona (0 for unknown values)."""
    if isinstance(persona, str):
        try:
            persona = Persona(persona)
        except ValueError:
            return 0
    return PERSONA_HIERARCHY.get(persona, 0)


def has_permission(persona: Persona | str, required: Persona | str) -> bool:
    """Check if persona has at least the required level.

    Examples:
        >>> has_permission(Persona.ADMIN, Persona.INSTRUCTOR)
        True
        >>> has_permission("learner", "instructor")
        False
    """
    return get_persona_level(persona) >= get_persona_level(required)


def is_super_admin(persona: Persona | str) -> bool:
    return Persona(persona) == Persona.SUPER_ADMIN


def is_admin(persona: Persona | str) -> bool:
    """ADMIN or SUPER_ADMIN."""
    return has_permission(persona, Persona.ADMIN)


def is_instructor(persona: Persona | str) -> bool:
    return Persona(persona) == Persona.INSTRUCTOR


def is_learner(persona: Persona | str) -> bool:
    return Persona(persona) == Persona.LEARNER
