from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    message: str
    type: str
    priority: str
    read: bool
    related_entity_type: str | None
    related_entity_id: UUID | None
    created_at: datetime


class NotificationListResponse(BaseModel):
    rows: list[NotificationResponse]
    total: int
    unread: int
    page: int
    page_size: int


class UnreadCountResponse(BaseModel):
    unread: int


class MarkAllReadResponse(BaseModel):
    updated: int
