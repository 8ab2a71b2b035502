from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


MaterialCondition = Literal["NEW", "GOOD", "SLIGHTLY_DAMAGED", "NEEDS_REPAIR", "SCRAP"]
MaterialStatus = Literal["AVAILABLE", "RESERVED", "TRANSFERRED", "ARCHIVED"]


class MaterialCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    unit: str = Field(min_length=1, max_length=50)
    quantity: Decimal
    condition: MaterialCondition = "GOOD"
    notes: str | None = None
    estimated_cost: Decimal | None = None
    available_from: datetime | None = None
    available_until: datetime | None = None
    attachment_ids: list[str] | None = None


class MaterialUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    unit: str | None = None
    condition: MaterialCondition | None = None
    notes: str | None = None
    estimated_cost: Decimal | None = None
    available_from: datetime | None = None
    available_until: datetime | None = None
    attachment_ids: list[str] | None = None


class MaterialResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    unit: str
    condition: str
    listed_quantity: Decimal
    quantity: Decimal
    status: str
    is_surplus: bool
    available_from: datetime | None
    available_until: datetime | None
    notes: str | None
    estimated_cost: Decimal | None
    attachment_ids: list[str] | None
    source_transfer_id: UUID | None
    created_by: UUID
    updated_by: UUID | None
    created_at: datetime
    updated_at: datetime


class MaterialListResponse(BaseModel):
    rows: list[MaterialResponse]
    total: int
    page: int
    page_size: int


class MaterialStatsResponse(BaseModel):
    total: int
    available: int
    reserved: int
    transferred: int
    archived: int
    surplus: int
    by_condition: dict[str, int]
    total_estimated_value: Decimal
