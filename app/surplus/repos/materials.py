from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, or_, select

from app.surplus.db.models import Material, MaterialAllocation


@dataclass(frozen=True)
class MaterialQueryFilters:
    organization_id: str | None = None
    status: str | None = None
    is_surplus: bool | None = None
    condition: str | None = None
    q: str | None = None


class MaterialRepository:
    def __init__(self, db):
        self.db = db

    def get(self, material_id) -> Material | None:
        return self.db.execute(select(Material).where(Material.id == material_id)).scalars().first()

    def get_for_update(self, material_id) -> Material | None:
        return (
            self.db.execute(
                select(Material)
                .where(Material.id == material_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def _filtered(self, filters: MaterialQueryFilters, organization_ids=None):
        stmt = select(Material)
        if filters.organization_id is not None:
            stmt = stmt.where(Material.organization_id == filters.organization_id)
        if organization_ids is not None:
            stmt = stmt.where(Material.organization_id.in_(organization_ids))
        if filters.status:
            stmt = stmt.where(Material.status == filters.status)
        if filters.is_surplus is not None:
            stmt = stmt.where(Material.is_surplus.is_(filters.is_surplus))
        if filters.condition:
            stmt = stmt.where(Material.condition == filters.condition)
        if filters.q:
            pattern = f"%{filters.q.strip()}%"
            stmt = stmt.where(or_(Material.name.ilike(pattern), Material.notes.ilike(pattern)))
        return stmt

    def list_materials(
        self,
        filters: MaterialQueryFilters,
        *,
        organization_ids=None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[Material], int]:
        stmt = self._filtered(filters, organization_ids)
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        stmt = stmt.order_by(Material.created_at.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all()), int(total or 0)

    def list_all(self, filters: MaterialQueryFilters, *, organization_ids=None) -> list[Material]:
        stmt = self._filtered(filters, organization_ids).order_by(Material.created_at.desc())
        return list(self.db.execute(stmt).scalars().all())

    def add(self, material: Material) -> Material:
        self.db.add(material)
        self.db.flush()
        return material

    def add_allocation(self, allocation: MaterialAllocation) -> MaterialAllocation:
        self.db.add(allocation)
        self.db.flush()
        return allocation

    def get_allocations(self, material_id) -> list[MaterialAllocation]:
        return list(
            self.db.execute(
                select(MaterialAllocation)
                .where(MaterialAllocation.material_id == material_id)
                .order_by(MaterialAllocation.allocated_at.asc())
            )
            .scalars()
            .all()
        )

    def allocated_total(self, material_id, *, transfer_request_id=None) -> Decimal:
        allocations = self.get_allocations(material_id)
        if transfer_request_id is not None:
            allocations = [row for row in allocations if row.transfer_request_id == transfer_request_id]
        return sum((row.quantity_allocated for row in allocations), Decimal("0"))
