from sqlalchemy import select

from app.surplus.core.config import settings
from app.surplus.core.context import PLATFORM_ADMIN
from app.surplus.core.security import get_password_hash
from app.surplus.db.models import Organization, User


def _get_or_create_platform_organization(db):
    organization = (
        db.execute(select(Organization).where(Organization.name == settings.PLATFORM_ORGANIZATION_NAME))
        .scalars()
        .first()
    )
    if organization:
        return organization
    organization = Organization(
        name=settings.PLATFORM_ORGANIZATION_NAME,
        category=settings.PLATFORM_ORGANIZATION_CATEGORY,
        description="Platform operators",
        is_active=True,
    )
    db.add(organization)
    db.flush()
    return organization


def _get_or_create_platform_admin(db, organization):
    user = (
        db.execute(
            select(User).where(
                User.email == settings.PLATFORM_ADMIN_EMAIL,
                User.organization_id == organization.id,
            )
        )
        .scalars()
        .first()
    )
    if user:
        return user
    user = User(
        organization_id=organization.id,
        name=settings.PLATFORM_ADMIN_NAME,
        email=settings.PLATFORM_ADMIN_EMAIL,
        hashed_password=get_password_hash(settings.PLATFORM_ADMIN_PASSWORD),
        role=PLATFORM_ADMIN,
        is_active=True,
    )
    db.add(user)
    return user


def run_seed(db):
    organization = _get_or_create_platform_organization(db)
    _get_or_create_platform_admin(db, organization)
    db.commit()
