from fastapi import Depends, Request

from app.surplus.core.context import IdentityContext
from app.surplus.core.security import oauth2_scheme, verify_credential
from app.surplus.db.session import get_db


def require_identity(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
    db=Depends(get_db),
) -> IdentityContext:
    trace_id = getattr(request.state, "trace_id", "")
    identity = verify_credential(token, db, trace_id=trace_id)
    request.state.identity = identity
    request.state.organization_id = identity.organization_id
    request.state.user_id = identity.user_id
    return identity


__all__ = ["get_db", "require_identity"]
