from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, TypeVar

from sqlalchemy.orm.exc import StaleDataError

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext
from app.surplus.core.error_catalog import AppError, ErrorCatalog, ErrorDefinition
from app.surplus.core.metrics import metrics
from app.surplus.core.pagination import resolve_page
from app.surplus.db.models import Material, MaterialAllocation, as_uuid
from app.surplus.repos.materials import MaterialQueryFilters, MaterialRepository
from app.surplus.repos.transfers import TransferRepository
from app.surplus.repos.users import OrganizationRepository
from app.surplus.services import audit as audit_actions
from app.surplus.services.attachments import AttachmentRegistry
from app.surplus.services.audit import AuditEntryPayload, AuditRecorder
from app.surplus.services.authorization import (
    ARCHIVE_MATERIAL,
    CREATE_MATERIAL,
    MARK_SURPLUS,
    READ_MATERIAL,
    UPDATE_MATERIAL,
    ResourceRef,
    authorize,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_AVAILABLE = "AVAILABLE"
STATUS_RESERVED = "RESERVED"
STATUS_TRANSFERRED = "TRANSFERRED"
STATUS_ARCHIVED = "ARCHIVED"
MATERIAL_STATUSES = (STATUS_AVAILABLE, STATUS_RESERVED, STATUS_TRANSFERRED, STATUS_ARCHIVED)

CONDITIONS = ("NEW", "GOOD", "SLIGHTLY_DAMAGED", "NEEDS_REPAIR", "SCRAP")

ENTRY_RESERVE = "RESERVE"
ENTRY_RELEASE = "RELEASE"

MATERIAL_ENTITY = "Material"

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "unit",
        "condition",
        "notes",
        "estimated_cost",
        "available_from",
        "available_until",
        "attachment_ids",
    }
)

ZERO = Decimal("0")


class ReservationStatus(str, Enum):
    OK = "OK"
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    MATERIAL_UNAVAILABLE = "MATERIAL_UNAVAILABLE"


_locks = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def _lock_for(material_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(material_id)
        if lock is None:
            lock = threading.Lock()
            _locks[material_id] = lock
        return lock


@contextmanager
def material_lock(material_id, *, timeout: float | None = None):
    """Hold the process-local lock for one material for the whole unit of work.

    Waits at most ``LOCK_TIMEOUT_SECONDS``; a timed out wait raises
    ``LOCK_TIMEOUT`` without touching the database.
    """
    key = str(as_uuid(material_id) or material_id)
    wait = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    lock = _lock_for(key)
    if not lock.acquire(timeout=wait):
        metrics.increment_lock_wait_timeout()
        logger.warning("Material lock wait timed out", extra={"material_id": key, "wait_seconds": wait})
        raise AppError(ErrorCatalog.LOCK_TIMEOUT, details={"material_id": key})
    try:
        yield
    finally:
        lock.release()


def run_unit_of_work(db, operation: Callable[[], T], *, stale_error: ErrorDefinition) -> T:
    """Run ``operation`` and commit once; roll everything back on any failure."""
    try:
        result = operation()
        db.commit()
        return result
    except StaleDataError as exc:
        db.rollback()
        raise AppError(stale_error, details={"reason": "concurrent_update"}) from exc
    except Exception:
        db.rollback()
        raise


def to_decimal(value, field: str = "quantity") -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"field": field, "message": "must be a decimal"}) from exc
    if not result.is_finite():
        raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"field": field, "message": "must be finite"})
    return result


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def material_snapshot(material: Material) -> dict:
    return {
        "id": str(material.id),
        "organization_id": str(material.organization_id),
        "name": material.name,
        "unit": material.unit,
        "condition": material.condition,
        "listed_quantity": format(material.listed_quantity, "f"),
        "quantity": format(material.quantity, "f"),
        "status": material.status,
        "is_surplus": material.is_surplus,
        "available_from": _iso(material.available_from),
        "available_until": _iso(material.available_until),
        "notes": material.notes,
        "estimated_cost": format(material.estimated_cost, "f") if material.estimated_cost is not None else None,
        "attachment_ids": list(material.attachment_ids or []),
        "source_transfer_id": str(material.source_transfer_id) if material.source_transfer_id else None,
    }


def is_eligible(material: Material | None) -> bool:
    return material is not None and material.is_surplus and material.status == STATUS_AVAILABLE


def is_exhausted(material: Material | None) -> bool:
    """Surplus whose whole remaining quantity is held by approved requests."""
    return (
        material is not None
        and material.is_surplus
        and material.status == STATUS_RESERVED
        and material.quantity == ZERO
    )


@dataclass
class MaterialDraft:
    name: str
    unit: str
    quantity: Decimal
    condition: str = "GOOD"
    notes: str | None = None
    estimated_cost: Decimal | None = None
    available_from: datetime | None = None
    available_until: datetime | None = None
    attachment_ids: list[str] | None = None


@dataclass
class SurplusFilters:
    condition: str | None = None
    min_quantity: Decimal | None = None
    q: str | None = None


@dataclass
class MaterialStats:
    total: int
    available: int
    reserved: int
    transferred: int
    archived: int
    surplus: int
    by_condition: dict[str, int]
    total_estimated_value: Decimal


class InventoryLedger:
    """Owner of material quantity and status.

    ``reserve``, ``release``, ``mark_transferred`` and ``receive`` join the
    caller's unit of work: the caller holds :func:`material_lock` and commits.
    The administrative operations run their own unit of work.
    """

    def __init__(self, db, *, audit: AuditRecorder | None = None, attachments: AttachmentRegistry | None = None):
        self.db = db
        self.repo = MaterialRepository(db)
        self.organizations = OrganizationRepository(db)
        self.transfers = TransferRepository(db)
        self.audit = audit or AuditRecorder(db)
        self.attachments = attachments or AttachmentRegistry(db)

    def _record(self, material: Material, action: str, actor_id, before, after, trace_id=None, organization_id=None):
        self.audit.record(
            AuditEntryPayload(
                organization_id=str(organization_id or material.organization_id),
                entity=MATERIAL_ENTITY,
                entity_id=str(material.id),
                action=action,
                actor_id=str(actor_id),
                before=before,
                after=after,
                trace_id=trace_id,
            )
        )

    def _touch(self, material: Material, actor_id) -> None:
        material.updated_by = as_uuid(actor_id)
        material.updated_at = datetime.utcnow()

    def reserve(
        self,
        material_id,
        quantity,
        transfer_request_id,
        actor_id,
        *,
        trace_id: str | None = None,
        notes: str | None = None,
    ) -> ReservationStatus:
        quantity = to_decimal(quantity)
        if quantity <= ZERO:
            raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"field": "quantity", "message": "must be > 0"})
        material = self.repo.get_for_update(as_uuid(material_id))
        if material is None or material.status not in {STATUS_AVAILABLE, STATUS_RESERVED}:
            return ReservationStatus.MATERIAL_UNAVAILABLE
        if material.status == STATUS_RESERVED or quantity > material.quantity:
            return ReservationStatus.INSUFFICIENT_QUANTITY
        before = material_snapshot(material)
        material.quantity = material.quantity - quantity
        if material.quantity == ZERO:
            material.status = STATUS_RESERVED
        self._touch(material, actor_id)
        self.repo.add_allocation(
            MaterialAllocation(
                material_id=material.id,
                transfer_request_id=as_uuid(transfer_request_id),
                entry_type=ENTRY_RESERVE,
                quantity_allocated=quantity,
                allocated_by=as_uuid(actor_id),
                notes=notes,
            )
        )
        self._record(material, audit_actions.MATERIAL_RESERVED, actor_id, before, material_snapshot(material), trace_id)
        return ReservationStatus.OK

    def release(
        self,
        material_id,
        quantity,
        transfer_request_id,
        actor_id,
        *,
        trace_id: str | None = None,
        notes: str | None = None,
    ) -> Material:
        quantity = to_decimal(quantity)
        material = self.repo.get_for_update(as_uuid(material_id))
        if material is None:
            raise AppError(ErrorCatalog.MATERIAL_NOT_FOUND)
        held = self.repo.allocated_total(material.id, transfer_request_id=as_uuid(transfer_request_id))
        if quantity <= ZERO or quantity > held:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"message": "release exceeds reservation", "reserved": held, "requested": quantity},
            )
        before = material_snapshot(material)
        material.quantity = material.quantity + quantity
        if material.status == STATUS_RESERVED:
            material.status = STATUS_AVAILABLE
        self._touch(material, actor_id)
        self.repo.add_allocation(
            MaterialAllocation(
                material_id=material.id,
                transfer_request_id=as_uuid(transfer_request_id),
                entry_type=ENTRY_RELEASE,
                quantity_allocated=-quantity,
                allocated_by=as_uuid(actor_id),
                notes=notes,
            )
        )
        self._record(material, audit_actions.MATERIAL_RELEASED, actor_id, before, material_snapshot(material), trace_id)
        return material

    def mark_transferred(self, material_id, transfer_request_id, actor_id, *, trace_id: str | None = None) -> Material:
        material = self.repo.get_for_update(as_uuid(material_id))
        if material is None:
            raise AppError(ErrorCatalog.MATERIAL_NOT_FOUND)
        before = material_snapshot(material)
        holders = self.transfers.count_with_status(material.id, "APPROVED", exclude_id=as_uuid(transfer_request_id))
        if material.quantity == ZERO and not holders:
            material.status = STATUS_TRANSFERRED
            material.is_surplus = False
        self._touch(material, actor_id)
        after = material_snapshot(material)
        after["transfer_request_id"] = str(transfer_request_id)
        self._record(material, audit_actions.MATERIAL_TRANSFERRED, actor_id, before, after, trace_id)
        return material

    def receive(self, transfer, actor_id, *, trace_id: str | None = None) -> Material:
        source = self.repo.get(transfer.material_id)
        if source is None:
            raise AppError(ErrorCatalog.MATERIAL_NOT_FOUND)
        owner = self.organizations.get_by_id(source.organization_id)
        now = datetime.utcnow()
        available_until = source.available_until
        if available_until is not None and available_until < now:
            available_until = None
        received = Material(
            organization_id=transfer.to_organization_id,
            name=source.name,
            unit=source.unit,
            condition=source.condition,
            listed_quantity=transfer.quantity_requested,
            quantity=transfer.quantity_requested,
            status=STATUS_AVAILABLE,
            is_surplus=False,
            available_from=now,
            available_until=available_until,
            notes=f"Transferred from {owner.name if owner else 'another organization'}",
            estimated_cost=source.estimated_cost,
            attachment_ids=list(source.attachment_ids or []),
            source_transfer_id=transfer.id,
            created_by=as_uuid(actor_id),
        )
        self.repo.add(received)
        self._record(
            received,
            audit_actions.MATERIAL_RECEIVED,
            actor_id,
            None,
            material_snapshot(received),
            trace_id,
        )
        return received

    def _owner_resource(self, material: Material) -> ResourceRef:
        owner = self.organizations.get_by_id(material.organization_id)
        return ResourceRef(
            organization_id=str(material.organization_id),
            category=owner.category if owner else "",
        )

    def _load(self, material_id, *, for_update: bool = False) -> Material:
        parsed = as_uuid(material_id)
        material = None
        if parsed is not None:
            material = self.repo.get_for_update(parsed) if for_update else self.repo.get(parsed)
        if material is None:
            raise AppError(ErrorCatalog.MATERIAL_NOT_FOUND, details={"material_id": str(material_id)})
        return material

    def get_material(self, identity: IdentityContext, material_id) -> Material:
        material = self._load(material_id)
        authorize(identity, READ_MATERIAL, self._owner_resource(material))
        return material

    def list_materials(
        self,
        identity: IdentityContext,
        *,
        status: str | None = None,
        is_surplus: bool | None = None,
        condition: str | None = None,
        q: str | None = None,
        organization_id: str | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> tuple[list[Material], int]:
        page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
        scope = identity.organization_id
        if organization_id and identity.is_platform_admin:
            scope = organization_id
        filters = MaterialQueryFilters(
            organization_id=as_uuid(scope),
            status=status,
            is_surplus=is_surplus,
            condition=condition,
            q=q,
        )
        return self.repo.list_materials(filters, limit=page_request.page_size, offset=page_request.offset)

    def list_surplus(
        self,
        identity: IdentityContext,
        filters: SurplusFilters | None = None,
        *,
        page: int | None = None,
        page_size: int | None = None,
    ) -> tuple[list[Material], int]:
        """Surplus listed by other active organizations of the caller's category."""
        filters = filters or SurplusFilters()
        page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
        organization_ids = self.organizations.list_active_ids_in_category(
            identity.organization_category,
            exclude_id=as_uuid(identity.organization_id),
        )
        if not organization_ids:
            return [], 0
        rows = self.repo.list_all(
            MaterialQueryFilters(
                status=STATUS_AVAILABLE,
                is_surplus=True,
                condition=filters.condition,
                q=filters.q,
            ),
            organization_ids=organization_ids,
        )
        if filters.min_quantity is not None:
            minimum = to_decimal(filters.min_quantity, "min_quantity")
            rows = [row for row in rows if row.quantity >= minimum]
        start = page_request.offset
        return rows[start : start + page_request.page_size], len(rows)

    def stats(self, identity: IdentityContext) -> MaterialStats:
        rows = self.repo.list_all(MaterialQueryFilters(organization_id=as_uuid(identity.organization_id)))
        by_status = {status: 0 for status in MATERIAL_STATUSES}
        by_condition: dict[str, int] = {}
        total_value = ZERO
        for row in rows:
            by_status[row.status] = by_status.get(row.status, 0) + 1
            by_condition[row.condition] = by_condition.get(row.condition, 0) + 1
            if row.estimated_cost is not None:
                total_value += row.estimated_cost
        return MaterialStats(
            total=len(rows),
            available=by_status[STATUS_AVAILABLE],
            reserved=by_status[STATUS_RESERVED],
            transferred=by_status[STATUS_TRANSFERRED],
            archived=by_status[STATUS_ARCHIVED],
            surplus=sum(1 for row in rows if row.is_surplus),
            by_condition=by_condition,
            total_estimated_value=total_value,
        )

    @staticmethod
    def _validate_window(available_from: datetime | None, available_until: datetime | None) -> None:
        if available_from and available_until and available_from > available_until:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"field": "available_until", "message": "available_until must not precede available_from"},
            )

    @staticmethod
    def _validate_condition(condition: str) -> str:
        if condition not in CONDITIONS:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"field": "condition", "message": f"condition must be one of {', '.join(CONDITIONS)}"},
            )
        return condition

    @staticmethod
    def _require_text(value, field: str) -> str:
        if value is None or not str(value).strip():
            raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"field": field, "message": "must not be empty"})
        return str(value).strip()

    def create_material(self, identity: IdentityContext, draft: MaterialDraft) -> Material:
        authorize(
            identity,
            CREATE_MATERIAL,
            ResourceRef(organization_id=identity.organization_id, category=identity.organization_category),
        )
        quantity = to_decimal(draft.quantity)
        if quantity <= ZERO:
            raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"field": "quantity", "message": "must be > 0"})
        estimated_cost = None
        if draft.estimated_cost is not None:
            estimated_cost = to_decimal(draft.estimated_cost, "estimated_cost")
            if estimated_cost < ZERO:
                raise AppError(
                    ErrorCatalog.VALIDATION_ERROR, details={"field": "estimated_cost", "message": "must be >= 0"}
                )
        self._validate_window(draft.available_from, draft.available_until)
        material = Material(
            organization_id=as_uuid(identity.organization_id),
            name=self._require_text(draft.name, "name"),
            unit=self._require_text(draft.unit, "unit"),
            condition=self._validate_condition(draft.condition),
            listed_quantity=quantity,
            quantity=quantity,
            status=STATUS_AVAILABLE,
            is_surplus=False,
            available_from=draft.available_from,
            available_until=draft.available_until,
            notes=draft.notes,
            estimated_cost=estimated_cost,
            attachment_ids=self.attachments.ensure_exist(identity.organization_id, draft.attachment_ids),
            created_by=as_uuid(identity.user_id),
        )

        def operation():
            self.repo.add(material)
            self._record(
                material,
                audit_actions.MATERIAL_CREATED,
                identity.user_id,
                None,
                material_snapshot(material),
                identity.trace_id,
            )
            return material

        return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.MATERIAL_UNAVAILABLE)

    def update_material(self, identity: IdentityContext, material_id, changes: dict) -> Material:
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"message": "fields are not updatable", "fields": unknown},
            )
        with material_lock(material_id):

            def operation():
                material = self._load(material_id, for_update=True)
                authorize(identity, UPDATE_MATERIAL, self._owner_resource(material))
                if material.status in {STATUS_TRANSFERRED, STATUS_ARCHIVED}:
                    raise AppError(ErrorCatalog.MATERIAL_UNAVAILABLE, details={"status": material.status})
                before = material_snapshot(material)
                for field, value in changes.items():
                    setattr(material, field, self._clean_update(identity, field, value))
                self._validate_window(material.available_from, material.available_until)
                self._touch(material, identity.user_id)
                self.db.flush()
                self._record(
                    material,
                    audit_actions.MATERIAL_UPDATED,
                    identity.user_id,
                    before,
                    material_snapshot(material),
                    identity.trace_id,
                )
                return material

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.MATERIAL_UNAVAILABLE)

    def _clean_update(self, identity: IdentityContext, field: str, value):
        if field in {"name", "unit"}:
            return self._require_text(value, field)
        if field == "condition":
            return self._validate_condition(value)
        if field == "estimated_cost":
            if value is None:
                return None
            cost = to_decimal(value, field)
            if cost < ZERO:
                raise AppError(ErrorCatalog.VALIDATION_ERROR, details={"field": field, "message": "must be >= 0"})
            return cost
        if field == "attachment_ids":
            return self.attachments.ensure_exist(identity.organization_id, value or [])
        return value

    def mark_surplus(self, identity: IdentityContext, material_id) -> Material:
        with material_lock(material_id):

            def operation():
                material = self._load(material_id, for_update=True)
                authorize(identity, MARK_SURPLUS, self._owner_resource(material))
                if material.status != STATUS_AVAILABLE:
                    raise AppError(ErrorCatalog.MATERIAL_UNAVAILABLE, details={"status": material.status})
                if material.quantity <= ZERO:
                    raise AppError(
                        ErrorCatalog.VALIDATION_ERROR,
                        details={"message": "cannot mark a material with zero quantity as surplus"},
                    )
                before = material_snapshot(material)
                material.is_surplus = True
                self._touch(material, identity.user_id)
                self.db.flush()
                self._record(
                    material,
                    audit_actions.MATERIAL_MARKED_SURPLUS,
                    identity.user_id,
                    before,
                    material_snapshot(material),
                    identity.trace_id,
                )
                return material

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.MATERIAL_UNAVAILABLE)

    def archive_material(self, identity: IdentityContext, material_id) -> Material:
        with material_lock(material_id):

            def operation():
                material = self._load(material_id, for_update=True)
                authorize(identity, ARCHIVE_MATERIAL, self._owner_resource(material))
                if material.status in {STATUS_TRANSFERRED, STATUS_ARCHIVED}:
                    raise AppError(ErrorCatalog.MATERIAL_UNAVAILABLE, details={"status": material.status})
                approved = self.transfers.count_with_status(material.id, "APPROVED")
                if approved:
                    raise AppError(
                        ErrorCatalog.MATERIAL_UNAVAILABLE,
                        details={"message": "material has approved transfers holding a reservation", "approved": approved},
                    )
                before = material_snapshot(material)
                material.status = STATUS_ARCHIVED
                material.is_surplus = False
                self._touch(material, identity.user_id)
                self.db.flush()
                self._record(
                    material,
                    audit_actions.MATERIAL_ARCHIVED,
                    identity.user_id,
                    before,
                    material_snapshot(material),
                    identity.trace_id,
                )
                return material

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.MATERIAL_UNAVAILABLE)
