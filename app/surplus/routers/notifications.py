from fastapi import APIRouter, Depends

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext
from app.surplus.core.deps import require_identity
from app.surplus.core.pagination import resolve_page
from app.surplus.db.session import get_db
from app.surplus.schemas.notifications import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from app.surplus.services.notifications import NotificationInbox

router = APIRouter()


@router.get("/surplus/notifications", response_model=NotificationListResponse)
def list_notifications(
    unread_only: bool = False,
    page: int = 1,
    page_size: int = 20,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    inbox = NotificationInbox(db)
    rows, total = inbox.list_notifications(identity, unread_only=unread_only, page=page, page_size=page_size)
    page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
    return NotificationListResponse(
        rows=[NotificationResponse.model_validate(row) for row in rows],
        total=total,
        unread=inbox.unread_count(identity),
        page=page_request.page,
        page_size=page_request.page_size,
    )


@router.get("/surplus/notifications/unread-count", response_model=UnreadCountResponse)
def unread_count(identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return UnreadCountResponse(unread=NotificationInbox(db).unread_count(identity))


@router.post("/surplus/notifications/read-all", response_model=MarkAllReadResponse)
def mark_all_read(identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return MarkAllReadResponse(updated=NotificationInbox(db).mark_all_read(identity))


@router.post("/surplus/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_read(notification_id: str, identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return NotificationResponse.model_validate(NotificationInbox(db).mark_read(identity, notification_id))
