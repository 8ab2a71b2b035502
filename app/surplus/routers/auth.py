from fastapi import APIRouter, Depends

from app.surplus.core.context import IdentityContext
from app.surplus.core.deps import require_identity
from app.surplus.db.session import get_db
from app.surplus.schemas.auth import IdentityResponse, LoginRequest, TokenResponse
from app.surplus.services.auth import AuthService

router = APIRouter()


@router.post("/login", response_model=TokenResponse, summary="Login with email and password")
def login(payload: LoginRequest, db=Depends(get_db)):
    _, token = AuthService(db).login(payload.email, payload.password)
    return TokenResponse(access_token=token)


@router.get("/me", response_model=IdentityResponse)
def me(identity: IdentityContext = Depends(require_identity)):
    return IdentityResponse(
        user_id=identity.user_id,
        organization_id=identity.organization_id,
        organization_category=identity.organization_category,
        role=identity.role,
        trace_id=identity.trace_id,
    )
