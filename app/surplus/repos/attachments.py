from sqlalchemy import select

from app.surplus.db.models import Attachment


class AttachmentRepository:
    def __init__(self, db):
        self.db = db

    def list_ids_in_organization(self, organization_id, attachment_ids) -> set:
        if not attachment_ids:
            return set()
        stmt = select(Attachment.id).where(
            Attachment.organization_id == organization_id,
            Attachment.id.in_(attachment_ids),
        )
        return set(self.db.execute(stmt).scalars().all())
