from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    organization_id: UUID
    entity: str
    entity_id: str
    action: str
    changed_by: UUID
    changed_at: datetime
    before: dict | None = Field(default=None, validation_alias="before_payload")
    after: dict | None = Field(default=None, validation_alias="after_payload")
    trace_id: str | None


class AuditListResponse(BaseModel):
    rows: list[AuditEntryResponse]
    total: int
    page: int
    page_size: int
