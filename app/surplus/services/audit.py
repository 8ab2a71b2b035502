import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.core.errors import json_safe
from app.surplus.db.models import AuditLogEntry, as_uuid
from app.surplus.repos.audit import AuditQueryFilters, AuditRepository

logger = logging.getLogger(__name__)


TRANSFER_REQUESTED = "TRANSFER_REQUESTED"
TRANSFER_APPROVED = "TRANSFER_APPROVED"
TRANSFER_REJECTED = "TRANSFER_REJECTED"
TRANSFER_CANCELLED = "TRANSFER_CANCELLED"
TRANSFER_COMPLETED = "TRANSFER_COMPLETED"
MATERIAL_CREATED = "MATERIAL_CREATED"
MATERIAL_UPDATED = "MATERIAL_UPDATED"
MATERIAL_MARKED_SURPLUS = "MATERIAL_MARKED_SURPLUS"
MATERIAL_ARCHIVED = "MATERIAL_ARCHIVED"
MATERIAL_RESERVED = "MATERIAL_RESERVED"
MATERIAL_RELEASED = "MATERIAL_RELEASED"
MATERIAL_TRANSFERRED = "MATERIAL_TRANSFERRED"
MATERIAL_RECEIVED = "MATERIAL_RECEIVED"


@dataclass
class AuditEntryPayload:
    organization_id: str
    entity: str
    entity_id: str
    action: str
    actor_id: str
    before: dict | None
    after: dict | None
    trace_id: str | None = None


class AuditRecorder:
    """Transactional audit trail.

    Entries join the caller's unit of work and are flushed immediately so a
    storage failure surfaces before the caller commits. The caller owns the
    commit and the rollback. There is no update or delete path.
    """

    def __init__(self, db):
        self.repo = AuditRepository(db)

    def record(self, payload: AuditEntryPayload) -> AuditLogEntry:
        entity_id = str(payload.entity_id)
        entry = AuditLogEntry(
            organization_id=as_uuid(payload.organization_id),
            entity=payload.entity,
            entity_id=entity_id,
            action=payload.action,
            changed_by=as_uuid(payload.actor_id),
            changed_at=datetime.utcnow(),
            before_payload=json_safe(payload.before),
            after_payload=json_safe(payload.after),
            trace_id=payload.trace_id or None,
        )
        try:
            self.repo.add(entry)
        except SQLAlchemyError as exc:
            # duplicates of (entity_id, action, changed_at) land here through the unique constraint
            logger.exception(
                "Failed to write audit entry",
                extra={"action": payload.action, "entity_id": entity_id, "trace_id": payload.trace_id},
            )
            raise AppError(
                ErrorCatalog.AUDIT_WRITE_FAILED,
                details={"action": payload.action, "entity_id": entity_id},
            ) from exc
        return entry

    def list_entries(
        self,
        filters: AuditQueryFilters,
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLogEntry], int]:
        return self.repo.list_entries(filters, limit=page_size, offset=(page - 1) * page_size)
