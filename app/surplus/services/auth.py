from datetime import datetime

from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.core.security import create_user_access_token, verify_password
from app.surplus.repos.users import OrganizationRepository, UserRepository


class AuthService:
    def __init__(self, db):
        self.repo = UserRepository(db)
        self.organizations = OrganizationRepository(db)

    def login(self, email: str, password: str):
        candidates = self.repo.list_by_email(email)
        if not candidates:
            raise AppError(ErrorCatalog.INVALID_CREDENTIALS)

        inactive_error = None
        for user in candidates:
            if not verify_password(password, user.hashed_password):
                continue
            try:
                self._ensure_active(user)
            except AppError as exc:
                inactive_error = exc
                continue
            user = self.repo.touch_last_login(user, datetime.utcnow())
            return user, create_user_access_token(user)

        if inactive_error is not None:
            raise inactive_error

        raise AppError(ErrorCatalog.INVALID_CREDENTIALS)

    def _ensure_active(self, user) -> None:
        if not user.is_active:
            raise AppError(ErrorCatalog.USER_INACTIVE)
        organization = self.organizations.get_by_id(user.organization_id)
        if organization is None or not organization.is_active:
            raise AppError(ErrorCatalog.ORGANIZATION_INACTIVE)
