"""Change notifications propagated to decoupled consumers."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EntityKind(str, Enum):
    SERVICE = "service"
    ENTITLEMENT = "entitlement"


class Mutation(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeEvent(BaseModel):
    """Ephemeral notice that an entity changed; consumers refetch on receipt."""

    entity_kind: EntityKind
    mutation: Mutation
    entity_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
