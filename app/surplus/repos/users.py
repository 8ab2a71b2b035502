from sqlalchemy import func, select

from app.surplus.db.models import Organization, User


class UserRepository:
    def __init__(self, db):
        self.db = db

    def get_by_id(self, user_id):
        return self.db.get(User, user_id)

    def list_by_email(self, email: str):
        stmt = select(User).where(func.lower(User.email) == email.strip().lower()).order_by(User.created_at)
        return self.db.execute(stmt).scalars().all()

    def list_active_in_organization(self, organization_id, *, role: str | None = None):
        stmt = select(User).where(User.organization_id == organization_id, User.is_active.is_(True))
        if role:
            stmt = stmt.where(User.role == role)
        return self.db.execute(stmt.order_by(User.created_at)).scalars().all()

    def touch_last_login(self, user: User, when) -> User:
        user.last_login_at = when
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user


class OrganizationRepository:
    def __init__(self, db):
        self.db = db

    def get_by_id(self, organization_id):
        return self.db.get(Organization, organization_id)

    def get_by_name(self, name: str):
        stmt = select(Organization).where(Organization.name == name)
        return self.db.execute(stmt).scalars().first()

    def list_active_ids_in_category(self, category: str, *, exclude_id=None):
        stmt = select(Organization.id).where(
            Organization.category == category,
            Organization.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Organization.id != exclude_id)
        return list(self.db.execute(stmt).scalars().all())
