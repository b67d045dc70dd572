"""Authenticated caller representation."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict

from src.auth.permissions import (
    Persona,
    is_admin,
    is_instructor,
    is_learner,
    is_super_admin,
)


class AccessContext(BaseModel):
    """Who is calling, in which tenant, with which persona."""

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    tenant_id: UUID
    persona: Persona

    @property
    def is_admin(self) -> bool:
        return is_admin(self.persona)

    @property
    def is_super_admin(self) -> bool:
        return is_super_admin(self.persona)

    @property
    def is_instructor(self) -> bool:
        return is_instructor(self.persona)

    @property
    def is_learner(self) -> bool:
        return is_learner(self.persona)
