from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext, build_identity_context
from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.db.models import as_uuid
from app.surplus.repos.users import OrganizationRepository, UserRepository

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/surplus/auth/login", auto_error=False)


class TokenData(BaseModel):
    sub: str
    organization_id: str
    organization_category: str
    role: str


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


def create_user_access_token(user, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token(
        {
            "sub": str(user.id),
            "organization_id": str(user.organization_id),
            "organization_category": user.organization.category,
            "role": user.role,
        },
        expires_delta=expires_delta,
    )


def decode_token_data(token: str | None) -> TokenData:
    if not token:
        raise AppError(ErrorCatalog.INVALID_TOKEN)
    try:
        payload = decode_token(token)
    except ExpiredSignatureError as exc:
        raise AppError(ErrorCatalog.TOKEN_EXPIRED) from exc
    except JWTError as exc:
        raise AppError(ErrorCatalog.INVALID_TOKEN) from exc
    try:
        return TokenData(**payload)
    except (ValidationError, TypeError) as exc:
        raise AppError(ErrorCatalog.INVALID_TOKEN) from exc


def verify_credential(token: str | None, db, *, trace_id: str = "") -> IdentityContext:
    """Resolve a bearer token to the caller's identity.

    The token must decode, carry every identity claim and name a known, active
    user whose organization is active. Role and organization come from the
    stored user, so a role change takes effect on the next request.
    """
    token_data = decode_token_data(token)
    user_id = as_uuid(token_data.sub)
    if user_id is None:
        raise AppError(ErrorCatalog.INVALID_TOKEN)
    user = UserRepository(db).get_by_id(user_id)
    if user is None:
        raise AppError(ErrorCatalog.UNKNOWN_SUBJECT)
    if not user.is_active:
        raise AppError(ErrorCatalog.USER_INACTIVE)
    organization = OrganizationRepository(db).get_by_id(user.organization_id)
    if organization is None:
        raise AppError(ErrorCatalog.UNKNOWN_SUBJECT)
    if not organization.is_active:
        raise AppError(ErrorCatalog.ORGANIZATION_INACTIVE)
    return build_identity_context(
        user_id=user.id,
        organization_id=organization.id,
        organization_category=organization.category,
        role=user.role,
        trace_id=trace_id,
    )
