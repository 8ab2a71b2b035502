from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, or_, select

from app.surplus.db.models import Material, TransferComment, TransferRequest


@dataclass(frozen=True)
class TransferQueryFilters:
    organization_id: str | None
    direction: str | None = None
    status: str | None = None
    material_id: str | None = None
    requested_by: str | None = None
    q: str | None = None


class TransferRepository:
    def __init__(self, db):
        self.db = db

    def get(self, transfer_id) -> TransferRequest | None:
        return self.db.execute(select(TransferRequest).where(TransferRequest.id == transfer_id)).scalars().first()

    def get_for_update(self, transfer_id) -> TransferRequest | None:
        return (
            self.db.execute(
                select(TransferRequest)
                .where(TransferRequest.id == transfer_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def list_transfers(
        self,
        filters: TransferQueryFilters,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[TransferRequest], int]:
        stmt = select(TransferRequest)
        if filters.organization_id is not None:
            if filters.direction == "incoming":
                stmt = stmt.where(TransferRequest.from_organization_id == filters.organization_id)
            elif filters.direction == "outgoing":
                stmt = stmt.where(TransferRequest.to_organization_id == filters.organization_id)
            else:
                stmt = stmt.where(
                    or_(
                        TransferRequest.from_organization_id == filters.organization_id,
                        TransferRequest.to_organization_id == filters.organization_id,
                    )
                )
        if filters.status:
            stmt = stmt.where(TransferRequest.status == filters.status)
        if filters.material_id:
            stmt = stmt.where(TransferRequest.material_id == filters.material_id)
        if filters.requested_by:
            stmt = stmt.where(TransferRequest.requested_by == filters.requested_by)
        if filters.q:
            pattern = f"%{filters.q.strip()}%"
            stmt = stmt.join(Material, Material.id == TransferRequest.material_id).where(
                or_(TransferRequest.purpose.ilike(pattern), Material.name.ilike(pattern))
            )
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        stmt = stmt.order_by(TransferRequest.created_at.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all()), int(total or 0)

    def count_with_status(self, material_id, status: str, *, exclude_id=None) -> int:
        stmt = (
            select(func.count())
            .select_from(TransferRequest)
            .where(TransferRequest.material_id == material_id, TransferRequest.status == status)
        )
        if exclude_id is not None:
            stmt = stmt.where(TransferRequest.id != exclude_id)
        return int(self.db.execute(stmt).scalar_one())

    def add(self, transfer: TransferRequest) -> TransferRequest:
        self.db.add(transfer)
        self.db.flush()
        return transfer

    def add_comment(self, comment: TransferComment) -> TransferComment:
        self.db.add(comment)
        self.db.flush()
        return comment

    def get_comments(self, transfer_id) -> list[TransferComment]:
        return list(
            self.db.execute(
                select(TransferComment)
                .where(TransferComment.transfer_request_id == transfer_id)
                .order_by(TransferComment.created_at.asc())
            )
            .scalars()
            .all()
        )
