from datetime import datetime

from fastapi import APIRouter, Depends

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext
from app.surplus.core.deps import require_identity
from app.surplus.core.pagination import resolve_page
from app.surplus.db.models import as_uuid
from app.surplus.db.session import get_db
from app.surplus.repos.audit import AuditQueryFilters
from app.surplus.schemas.audit import AuditEntryResponse, AuditListResponse
from app.surplus.services.audit import AuditRecorder
from app.surplus.services.authorization import READ_AUDIT, ResourceRef, authorize

router = APIRouter()


@router.get("/surplus/audit", response_model=AuditListResponse)
def list_audit_entries(
    entity: str | None = None,
    entity_id: str | None = None,
    changed_by: str | None = None,
    changed_from: datetime | None = None,
    changed_to: datetime | None = None,
    organization_id: str | None = None,
    page: int = 1,
    page_size: int = 50,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    scope = organization_id if organization_id and identity.is_platform_admin else identity.organization_id
    authorize(
        identity,
        READ_AUDIT,
        ResourceRef(organization_id=scope, category=identity.organization_category),
    )
    page_request = resolve_page(page, page_size, max_page_size=settings.AUDIT_LIST_MAX_PAGE_SIZE)
    rows, total = AuditRecorder(db).list_entries(
        AuditQueryFilters(
            organization_id=as_uuid(scope),
            entity=entity,
            entity_id=entity_id,
            changed_by=as_uuid(changed_by) if changed_by else None,
            changed_from=changed_from,
            changed_to=changed_to,
        ),
        page=page_request.page,
        page_size=page_request.page_size,
    )
    return AuditListResponse(
        rows=[AuditEntryResponse.model_validate(row) for row in rows],
        total=total,
        page=page_request.page,
        page_size=page_request.page_size,
    )
