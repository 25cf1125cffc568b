"""Shapes returned by the delivery gate."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..catalog.models import PayloadKind


class DeliveredPayload(BaseModel):
    service_id: str
    entitlement_id: str
    kind: PayloadKind
    content: str
    file_type: Optional[str] = None
    usage_count: int
    max_usage: Optional[int] = None
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)
