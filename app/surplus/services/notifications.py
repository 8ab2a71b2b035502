import logging
from abc import ABC, abstractmethod

from app.surplus.core.config import settings
from app.surplus.core.context import ORG_ADMIN, IdentityContext
from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.core.pagination import resolve_page
from app.surplus.db.models import Notification, as_uuid
from app.surplus.repos.materials import MaterialRepository
from app.surplus.repos.notifications import NotificationRepository
from app.surplus.repos.users import UserRepository

logger = logging.getLogger(__name__)


EVENT_REQUESTED = "REQUESTED"
EVENT_APPROVED = "APPROVED"
EVENT_REJECTED = "REJECTED"
EVENT_COMPLETED = "COMPLETED"

_TEMPLATES = {
    EVENT_REQUESTED: ("New transfer request", "A transfer of {quantity} {unit} of {name} was requested.", "info", "medium"),
    EVENT_APPROVED: ("Transfer request approved", "Your request for {quantity} {unit} of {name} was approved.", "success", "high"),
    EVENT_REJECTED: ("Transfer request rejected", "Your request for {quantity} {unit} of {name} was rejected.", "warning", "medium"),
    EVENT_COMPLETED: ("Transfer completed", "The transfer of {quantity} {unit} of {name} is complete.", "success", "medium"),
}


class Notifier(ABC):
    @abstractmethod
    def notify_transition(self, transfer, event: str) -> None:
        """Announce a committed transition to the parties involved."""


class DatabaseNotifier(Notifier):
    """Stores one notification row per recipient; delivery happens elsewhere."""

    def __init__(self, db):
        self.db = db
        self.repo = NotificationRepository(db)
        self.users = UserRepository(db)
        self.materials = MaterialRepository(db)

    def _recipients(self, transfer, event: str):
        if event == EVENT_REQUESTED:
            return self.users.list_active_in_organization(transfer.from_organization_id, role=ORG_ADMIN)
        return self.users.list_active_in_organization(transfer.to_organization_id)

    def notify_transition(self, transfer, event: str) -> None:
        if not settings.NOTIFICATIONS_ENABLED or event not in _TEMPLATES:
            return
        title, template, kind, priority = _TEMPLATES[event]
        material = self.materials.get(transfer.material_id)
        message = template.format(
            quantity=format(transfer.quantity_requested, "f"),
            unit=material.unit if material else "",
            name=material.name if material else "material",
        )
        notifications = [
            Notification(
                user_id=user.id,
                organization_id=user.organization_id,
                title=title,
                message=message,
                type=kind,
                priority=priority,
                related_entity_type="TransferRequest",
                related_entity_id=transfer.id,
            )
            for user in self._recipients(transfer, event)
        ]
        if not notifications:
            return
        try:
            self.repo.add_all(notifications)
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Stored transfer notifications",
            extra={"event": event, "transfer_id": str(transfer.id), "recipients": len(notifications)},
        )


class NotificationInbox:
    """Per-user view over stored notifications; every call is scoped to the caller."""

    def __init__(self, db):
        self.db = db
        self.repo = NotificationRepository(db)

    def list_notifications(self, identity: IdentityContext, *, unread_only: bool = False, page=None, page_size=None):
        page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
        return self.repo.list_for_user(
            as_uuid(identity.user_id),
            unread_only=unread_only,
            limit=page_request.page_size,
            offset=page_request.offset,
        )

    def unread_count(self, identity: IdentityContext) -> int:
        return self.repo.count_unread(as_uuid(identity.user_id))

    def mark_read(self, identity: IdentityContext, notification_id) -> Notification:
        parsed = as_uuid(notification_id)
        notification = self.repo.get_for_user(parsed, as_uuid(identity.user_id)) if parsed else None
        if notification is None:
            raise AppError(ErrorCatalog.NOTIFICATION_NOT_FOUND, details={"notification_id": str(notification_id)})
        if not notification.read:
            notification.read = True
            self.db.commit()
        return notification

    def mark_all_read(self, identity: IdentityContext) -> int:
        updated = self.repo.mark_all_read(as_uuid(identity.user_id))
        self.db.commit()
        return updated
