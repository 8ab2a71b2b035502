from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class TransferCreateRequest(BaseModel):
    material_id: str
    quantity_requested: Decimal
    purpose: str
    comment: str | None = None


class TransferActionRequest(BaseModel):
    comment: str | None = None


class TransferCommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    comment_type: str
    comment: str
    created_by: UUID
    created_at: datetime


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    material_id: UUID
    from_organization_id: UUID
    to_organization_id: UUID
    quantity_requested: Decimal
    purpose: str
    status: str
    requested_by: UUID
    approved_by: UUID | None
    approved_at: datetime | None
    rejected_at: datetime | None
    cancelled_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    comments: list[TransferCommentResponse] = []


class TransferListResponse(BaseModel):
    rows: list[TransferResponse]
    total: int
    page: int
    page_size: int
