from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from app.surplus.db.models import AuditLogEntry


@dataclass(frozen=True)
class AuditQueryFilters:
    organization_id: str | None
    entity: str | None = None
    entity_id: str | None = None
    changed_by: str | None = None
    changed_from: datetime | None = None
    changed_to: datetime | None = None


class AuditRepository:
    def __init__(self, db):
        self.db = db

    def add(self, entry: AuditLogEntry) -> AuditLogEntry:
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_entries(
        self,
        filters: AuditQueryFilters,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[AuditLogEntry], int]:
        stmt = select(AuditLogEntry)
        if filters.organization_id is not None:
            stmt = stmt.where(AuditLogEntry.organization_id == filters.organization_id)
        if filters.entity:
            stmt = stmt.where(AuditLogEntry.entity == filters.entity)
        if filters.entity_id:
            stmt = stmt.where(AuditLogEntry.entity_id == filters.entity_id)
        if filters.changed_by:
            stmt = stmt.where(AuditLogEntry.changed_by == filters.changed_by)
        if filters.changed_from:
            stmt = stmt.where(AuditLogEntry.changed_at >= filters.changed_from)
        if filters.changed_to:
            stmt = stmt.where(AuditLogEntry.changed_at <= filters.changed_to)
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        stmt = stmt.order_by(AuditLogEntry.changed_at.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all()), int(total or 0)

    def list_for_entity(self, entity_id: str) -> list[AuditLogEntry]:
        return list(
            self.db.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.entity_id == entity_id)
                .order_by(AuditLogEntry.changed_at.asc())
            )
            .scalars()
            .all()
        )
