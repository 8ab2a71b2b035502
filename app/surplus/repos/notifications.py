from sqlalchemy import func, select, update

from app.surplus.db.models import Notification


class NotificationRepository:
    def __init__(self, db):
        self.db = db

    def add_all(self, notifications: list[Notification]) -> list[Notification]:
        self.db.add_all(notifications)
        self.db.commit()
        return notifications

    def list_for_user(
        self,
        user_id,
        *,
        unread_only: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[Notification], int]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        stmt = stmt.order_by(Notification.created_at.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all()), int(total or 0)

    def count_unread(self, user_id) -> int:
        return int(
            self.db.execute(
                select(func.count())
                .select_from(Notification)
                .where(Notification.user_id == user_id, Notification.read.is_(False))
            ).scalar_one()
        )

    def get_for_user(self, notification_id, user_id) -> Notification | None:
        return (
            self.db.execute(
                select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
            )
            .scalars()
            .first()
        )

    def mark_all_read(self, user_id) -> int:
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
