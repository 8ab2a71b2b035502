from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext
from app.surplus.core.error_catalog import KIND_INFRASTRUCTURE, AppError, ErrorCatalog, ErrorDefinition
from app.surplus.core.logging import log_json
from app.surplus.core.metrics import metrics
from app.surplus.core.pagination import resolve_page
from app.surplus.db.models import TransferComment, TransferRequest, as_uuid
from app.surplus.repos.transfers import TransferQueryFilters, TransferRepository
from app.surplus.repos.users import OrganizationRepository
from app.surplus.services import audit as audit_actions
from app.surplus.services import notifications as events
from app.surplus.services.audit import AuditEntryPayload, AuditRecorder
from app.surplus.services.authorization import (
    APPROVE_TRANSFER,
    CANCEL_TRANSFER,
    COMPLETE_TRANSFER,
    CREATE_TRANSFER,
    READ_TRANSFER,
    REJECT_TRANSFER,
    ResourceRef,
    authorize,
)
from app.surplus.services.ledger import (
    ZERO,
    InventoryLedger,
    ReservationStatus,
    is_eligible,
    is_exhausted,
    material_lock,
    run_unit_of_work,
    to_decimal,
)
from app.surplus.services.notifications import DatabaseNotifier, Notifier

logger = logging.getLogger("surplus.transfers")

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
STATUSES = (PENDING, APPROVED, REJECTED, COMPLETED, CANCELLED)
TERMINAL_STATUSES = frozenset({REJECTED, COMPLETED, CANCELLED})

ALLOWED_TRANSITIONS = frozenset(
    {
        (PENDING, APPROVED),
        (PENDING, REJECTED),
        (PENDING, CANCELLED),
        (APPROVED, COMPLETED),
        (APPROVED, CANCELLED),
    }
)

COMMENT_REQUEST = "REQUEST"
COMMENT_APPROVAL = "APPROVAL"
COMMENT_REJECTION = "REJECTION"
COMMENT_COMPLETION = "COMPLETION"
COMMENT_CANCELLATION = "CANCELLATION"

TRANSFER_ENTITY = "TransferRequest"
MIN_PURPOSE_LENGTH = 10
DIRECTIONS = ("incoming", "outgoing")

_RESERVATION_ERRORS = {
    ReservationStatus.INSUFFICIENT_QUANTITY: ErrorCatalog.INSUFFICIENT_QUANTITY,
    ReservationStatus.MATERIAL_UNAVAILABLE: ErrorCatalog.MATERIAL_UNAVAILABLE,
}


@dataclass
class WorkflowResult:
    ok: bool
    transfer: TransferRequest | None = None
    error: ErrorDefinition | None = None
    details: object | None = None
    retryable: bool = False

    @classmethod
    def success(cls, transfer: TransferRequest) -> "WorkflowResult":
        return cls(ok=True, transfer=transfer)

    @classmethod
    def failure(cls, exc: AppError) -> "WorkflowResult":
        return cls(ok=False, error=exc.error, details=exc.details, retryable=exc.retryable)

    def unwrap(self) -> TransferRequest:
        if not self.ok:
            raise AppError(self.error, details=self.details)
        return self.transfer


@dataclass
class TransferDraft:
    material_id: str
    quantity_requested: Decimal
    purpose: str
    comment: str | None = None


@dataclass
class TransferListFilters:
    direction: str | None = None
    status: str | None = None
    material_id: str | None = None
    requested_by: str | None = None
    q: str | None = None


def transfer_snapshot(transfer: TransferRequest) -> dict:
    def iso(value):
        return value.isoformat() if value is not None else None

    return {
        "id": str(transfer.id),
        "material_id": str(transfer.material_id),
        "from_organization_id": str(transfer.from_organization_id),
        "to_organization_id": str(transfer.to_organization_id),
        "quantity_requested": format(transfer.quantity_requested, "f"),
        "purpose": transfer.purpose,
        "status": transfer.status,
        "requested_by": str(transfer.requested_by),
        "approved_by": str(transfer.approved_by) if transfer.approved_by else None,
        "approved_at": iso(transfer.approved_at),
        "rejected_at": iso(transfer.rejected_at),
        "cancelled_at": iso(transfer.cancelled_at),
        "completed_at": iso(transfer.completed_at),
    }


class TransferWorkflowEngine:
    """Drives transfer requests through their lifecycle.

    Every public transition takes the caller's identity explicitly and returns a
    :class:`WorkflowResult`. Checks run in a fixed order: existence, the
    authorization gate, the status guard, then validation and inventory. Each
    transition is one unit of work: status change, ledger mutation, comment and
    audit entries commit together or not at all. Infrastructure failures are
    raised, never folded into a result.
    """

    def __init__(
        self,
        db,
        *,
        ledger: InventoryLedger | None = None,
        audit: AuditRecorder | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.repo = TransferRepository(db)
        self.organizations = OrganizationRepository(db)
        self.audit = audit or AuditRecorder(db)
        self.ledger = ledger or InventoryLedger(db, audit=self.audit)
        self.notifier = notifier or DatabaseNotifier(db)

    def _resource(self, transfer: TransferRequest) -> ResourceRef:
        owner = self.organizations.get_by_id(transfer.from_organization_id)
        return ResourceRef(
            organization_id=str(transfer.from_organization_id),
            category=owner.category if owner else "",
            from_organization_id=str(transfer.from_organization_id),
            to_organization_id=str(transfer.to_organization_id),
            requested_by=str(transfer.requested_by),
        )

    def _load(self, transfer_id) -> TransferRequest:
        parsed = as_uuid(transfer_id)
        transfer = self.repo.get(parsed) if parsed is not None else None
        if transfer is None:
            raise AppError(ErrorCatalog.TRANSFER_NOT_FOUND, details={"transfer_id": str(transfer_id)})
        return transfer

    def _load_for_update(self, transfer_id) -> TransferRequest:
        transfer = self.repo.get_for_update(as_uuid(transfer_id))
        if transfer is None:
            raise AppError(ErrorCatalog.TRANSFER_NOT_FOUND, details={"transfer_id": str(transfer_id)})
        return transfer

    @staticmethod
    def _guard(transfer: TransferRequest, target: str) -> None:
        if (transfer.status, target) not in ALLOWED_TRANSITIONS:
            raise AppError(
                ErrorCatalog.INVALID_TRANSFER_STATUS,
                details={"status": transfer.status, "target": target},
            )

    def _comment(self, transfer: TransferRequest, comment_type: str, text: str, actor_id, when: datetime) -> None:
        self.repo.add_comment(
            TransferComment(
                transfer_request_id=transfer.id,
                comment_type=comment_type,
                comment=text,
                created_by=as_uuid(actor_id),
                created_at=when,
            )
        )

    def _record(self, transfer: TransferRequest, action: str, identity: IdentityContext, before, after) -> None:
        self.audit.record(
            AuditEntryPayload(
                organization_id=str(transfer.from_organization_id),
                entity=TRANSFER_ENTITY,
                entity_id=str(transfer.id),
                action=action,
                actor_id=identity.user_id,
                before=before,
                after=after,
                trace_id=identity.trace_id,
            )
        )

    def _run(
        self,
        transition: str,
        identity: IdentityContext,
        operation: Callable[[], TransferRequest],
        event: str | None,
    ) -> WorkflowResult:
        try:
            transfer = operation()
        except AppError as exc:
            metrics.record_transition(transition, exc.error.code)
            log_json(
                logger,
                {
                    "event": "transfer_transition",
                    "transition": transition,
                    "result": exc.error.code,
                    "user_id": identity.user_id,
                    "trace_id": identity.trace_id,
                },
                level=logging.WARNING,
            )
            if exc.error.kind == KIND_INFRASTRUCTURE:
                raise
            return WorkflowResult.failure(exc)
        metrics.record_transition(transition, "ok")
        log_json(
            logger,
            {
                "event": "transfer_transition",
                "transition": transition,
                "result": "ok",
                "transfer_id": str(transfer.id),
                "status": transfer.status,
                "user_id": identity.user_id,
                "trace_id": identity.trace_id,
            },
        )
        if event is not None:
            self._notify(transfer, event)
        return WorkflowResult.success(transfer)

    def _notify(self, transfer: TransferRequest, event: str) -> None:
        try:
            self.notifier.notify_transition(transfer, event)
        except Exception:
            logger.exception(
                "Failed to notify transfer transition",
                extra={"transfer_id": str(transfer.id), "transition_event": event},
            )

    def create_transfer_request(self, identity: IdentityContext, draft: TransferDraft) -> WorkflowResult:
        return self._run("create", identity, lambda: self._create(identity, draft), events.EVENT_REQUESTED)

    def _create(self, identity: IdentityContext, draft: TransferDraft) -> TransferRequest:
        material_id = as_uuid(draft.material_id)
        material = self.ledger.repo.get(material_id) if material_id is not None else None
        if material is None:
            raise AppError(ErrorCatalog.MATERIAL_NOT_FOUND, details={"material_id": str(draft.material_id)})
        owner = self.organizations.get_by_id(material.organization_id)
        authorize(
            identity,
            CREATE_TRANSFER,
            ResourceRef(
                organization_id=str(material.organization_id),
                category=owner.category if owner else "",
                from_organization_id=str(material.organization_id),
                to_organization_id=identity.organization_id,
                requested_by=identity.user_id,
            ),
        )
        if str(material.organization_id) == identity.organization_id:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"message": "cannot request a transfer of your own material"},
            )
        quantity = to_decimal(draft.quantity_requested, "quantity_requested")
        if quantity <= ZERO:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR, details={"field": "quantity_requested", "message": "must be > 0"}
            )
        purpose = (draft.purpose or "").strip()
        if len(purpose) < MIN_PURPOSE_LENGTH:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"field": "purpose", "message": f"must be at least {MIN_PURPOSE_LENGTH} characters"},
            )
        if not is_eligible(material):
            raise AppError(
                ErrorCatalog.MATERIAL_UNAVAILABLE,
                details={"status": material.status, "is_surplus": material.is_surplus},
            )
        if quantity > material.quantity:
            raise AppError(
                ErrorCatalog.INSUFFICIENT_QUANTITY,
                details={"available": material.quantity, "requested": quantity},
            )

        def operation():
            now = datetime.utcnow()
            transfer = TransferRequest(
                material_id=material.id,
                from_organization_id=material.organization_id,
                to_organization_id=as_uuid(identity.organization_id),
                quantity_requested=quantity,
                purpose=purpose,
                status=PENDING,
                requested_by=as_uuid(identity.user_id),
                created_at=now,
                updated_at=now,
            )
            self.repo.add(transfer)
            self._comment(transfer, COMMENT_REQUEST, (draft.comment or purpose).strip(), identity.user_id, now)
            self._record(transfer, audit_actions.TRANSFER_REQUESTED, identity, None, transfer_snapshot(transfer))
            return transfer

        return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.INVALID_TRANSFER_STATUS)

    def approve(self, identity: IdentityContext, transfer_id, comment: str | None = None) -> WorkflowResult:
        return self._run("approve", identity, lambda: self._approve(identity, transfer_id, comment), events.EVENT_APPROVED)

    def _approve(self, identity: IdentityContext, transfer_id, comment: str | None) -> TransferRequest:
        material_id = self._load(transfer_id).material_id
        with material_lock(material_id):

            def operation():
                transfer = self._load_for_update(transfer_id)
                authorize(identity, APPROVE_TRANSFER, self._resource(transfer))
                self._guard(transfer, APPROVED)
                material = self.ledger.repo.get_for_update(transfer.material_id)
                if not (is_eligible(material) or is_exhausted(material)):
                    raise AppError(ErrorCatalog.MATERIAL_UNAVAILABLE, details={"material_id": str(material_id)})
                status = self.ledger.reserve(
                    transfer.material_id,
                    transfer.quantity_requested,
                    transfer.id,
                    identity.user_id,
                    trace_id=identity.trace_id,
                    notes=comment,
                )
                if status is not ReservationStatus.OK:
                    raise AppError(
                        _RESERVATION_ERRORS[status],
                        details={"available": material.quantity, "requested": transfer.quantity_requested},
                    )
                before = transfer_snapshot(transfer)
                now = datetime.utcnow()
                transfer.status = APPROVED
                transfer.approved_by = as_uuid(identity.user_id)
                transfer.approved_at = now
                transfer.updated_at = now
                self._comment(transfer, COMMENT_APPROVAL, comment or "Approved", identity.user_id, now)
                self.db.flush()
                self._record(transfer, audit_actions.TRANSFER_APPROVED, identity, before, transfer_snapshot(transfer))
                return transfer

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.INVALID_TRANSFER_STATUS)

    def reject(self, identity: IdentityContext, transfer_id, comment: str | None) -> WorkflowResult:
        return self._run("reject", identity, lambda: self._reject(identity, transfer_id, comment), events.EVENT_REJECTED)

    def _reject(self, identity: IdentityContext, transfer_id, comment: str | None) -> TransferRequest:
        material_id = self._load(transfer_id).material_id
        with material_lock(material_id):

            def operation():
                transfer = self._load_for_update(transfer_id)
                authorize(identity, REJECT_TRANSFER, self._resource(transfer))
                self._guard(transfer, REJECTED)
                text = (comment or "").strip()
                if not text:
                    raise AppError(
                        ErrorCatalog.VALIDATION_ERROR,
                        details={"field": "comment", "message": "a rejection comment is required"},
                    )
                before = transfer_snapshot(transfer)
                now = datetime.utcnow()
                transfer.status = REJECTED
                transfer.rejected_at = now
                transfer.updated_at = now
                self._comment(transfer, COMMENT_REJECTION, text, identity.user_id, now)
                self.db.flush()
                self._record(transfer, audit_actions.TRANSFER_REJECTED, identity, before, transfer_snapshot(transfer))
                return transfer

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.INVALID_TRANSFER_STATUS)

    def cancel(self, identity: IdentityContext, transfer_id, comment: str | None = None) -> WorkflowResult:
        return self._run("cancel", identity, lambda: self._cancel(identity, transfer_id, comment), None)

    def _cancel(self, identity: IdentityContext, transfer_id, comment: str | None) -> TransferRequest:
        material_id = self._load(transfer_id).material_id
        with material_lock(material_id):

            def operation():
                transfer = self._load_for_update(transfer_id)
                authorize(identity, CANCEL_TRANSFER, self._resource(transfer))
                self._guard(transfer, CANCELLED)
                if transfer.status == APPROVED:
                    self.ledger.release(
                        transfer.material_id,
                        transfer.quantity_requested,
                        transfer.id,
                        identity.user_id,
                        trace_id=identity.trace_id,
                        notes=comment,
                    )
                before = transfer_snapshot(transfer)
                now = datetime.utcnow()
                transfer.status = CANCELLED
                transfer.cancelled_at = now
                transfer.updated_at = now
                self._comment(transfer, COMMENT_CANCELLATION, comment or "Cancelled", identity.user_id, now)
                self.db.flush()
                self._record(transfer, audit_actions.TRANSFER_CANCELLED, identity, before, transfer_snapshot(transfer))
                return transfer

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.INVALID_TRANSFER_STATUS)

    def complete(self, identity: IdentityContext, transfer_id, comment: str | None = None) -> WorkflowResult:
        return self._run(
            "complete", identity, lambda: self._complete(identity, transfer_id, comment), events.EVENT_COMPLETED
        )

    def _complete(self, identity: IdentityContext, transfer_id, comment: str | None) -> TransferRequest:
        material_id = self._load(transfer_id).material_id
        with material_lock(material_id):

            def operation():
                transfer = self._load_for_update(transfer_id)
                authorize(identity, COMPLETE_TRANSFER, self._resource(transfer))
                self._guard(transfer, COMPLETED)
                self.ledger.mark_transferred(transfer.material_id, transfer.id, identity.user_id, trace_id=identity.trace_id)
                self.ledger.receive(transfer, identity.user_id, trace_id=identity.trace_id)
                before = transfer_snapshot(transfer)
                now = datetime.utcnow()
                transfer.status = COMPLETED
                transfer.completed_at = now
                transfer.updated_at = now
                self._comment(transfer, COMMENT_COMPLETION, comment or "Completed", identity.user_id, now)
                self.db.flush()
                self._record(transfer, audit_actions.TRANSFER_COMPLETED, identity, before, transfer_snapshot(transfer))
                return transfer

            return run_unit_of_work(self.db, operation, stale_error=ErrorCatalog.INVALID_TRANSFER_STATUS)

    def get_transfer(self, identity: IdentityContext, transfer_id) -> TransferRequest:
        transfer = self._load(transfer_id)
        authorize(identity, READ_TRANSFER, self._resource(transfer))
        return transfer

    def list_transfers(
        self,
        identity: IdentityContext,
        filters: TransferListFilters | None = None,
        *,
        page: int | None = None,
        page_size: int | None = None,
    ) -> tuple[list[TransferRequest], int]:
        filters = filters or TransferListFilters()
        page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
        if filters.direction is not None and filters.direction not in DIRECTIONS:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"field": "direction", "message": "direction must be incoming or outgoing"},
            )
        if filters.status is not None and filters.status not in STATUSES:
            raise AppError(
                ErrorCatalog.VALIDATION_ERROR,
                details={"field": "status", "message": f"status must be one of {', '.join(STATUSES)}"},
            )
        organization_id = None
        if not identity.is_platform_admin or filters.direction is not None:
            organization_id = as_uuid(identity.organization_id)
        query = TransferQueryFilters(
            organization_id=organization_id,
            direction=filters.direction,
            status=filters.status,
            material_id=as_uuid(filters.material_id) if filters.material_id else None,
            requested_by=as_uuid(filters.requested_by) if filters.requested_by else None,
            q=filters.q,
        )
        return self.repo.list_transfers(query, limit=page_request.page_size, offset=page_request.offset)

    def get_comments(self, transfer: TransferRequest) -> list[TransferComment]:
        return self.repo.get_comments(transfer.id)
