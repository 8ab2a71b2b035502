from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.db.models import Attachment, as_uuid
from app.surplus.repos.attachments import AttachmentRepository


class AttachmentRegistry:
    """Attachment metadata lookup. Binaries live in external storage."""

    def __init__(self, db):
        self.repo = AttachmentRepository(db)

    def register(
        self,
        *,
        organization_id,
        original_name: str,
        mime_type: str,
        size: int,
        storage_key: str,
        uploaded_by,
    ) -> Attachment:
        attachment = Attachment(
            organization_id=as_uuid(organization_id),
            original_name=original_name,
            mime_type=mime_type,
            size=size,
            storage_key=storage_key,
            uploaded_by=as_uuid(uploaded_by),
        )
        self.repo.db.add(attachment)
        self.repo.db.flush()
        return attachment

    def ensure_exist(self, organization_id, attachment_ids) -> list[str]:
        if not attachment_ids:
            return []
        parsed = {str(value): as_uuid(value) for value in attachment_ids}
        malformed = [raw for raw, value in parsed.items() if value is None]
        found = self.repo.list_ids_in_organization(
            as_uuid(organization_id),
            [value for value in parsed.values() if value is not None],
        )
        missing = malformed + [raw for raw, value in parsed.items() if value is not None and value not in found]
        if missing:
            raise AppError(ErrorCatalog.ATTACHMENT_NOT_FOUND, details={"attachment_ids": sorted(missing)})
        return [str(value) for value in parsed.values()]
