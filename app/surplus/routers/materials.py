from dataclasses import asdict
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext
from app.surplus.core.deps import require_identity
from app.surplus.core.pagination import resolve_page
from app.surplus.db.session import get_db
from app.surplus.schemas.materials import (
    MaterialCreateRequest,
    MaterialListResponse,
    MaterialResponse,
    MaterialStatsResponse,
    MaterialUpdateRequest,
)
from app.surplus.services.ledger import InventoryLedger, MaterialDraft, SurplusFilters

router = APIRouter()


def _list_response(rows, total, page, page_size) -> MaterialListResponse:
    page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
    return MaterialListResponse(
        rows=[MaterialResponse.model_validate(row) for row in rows],
        total=total,
        page=page_request.page,
        page_size=page_request.page_size,
    )


@router.get("/surplus/materials", response_model=MaterialListResponse)
def list_materials(
    status_filter: str | None = Query(None, alias="status"),
    is_surplus: bool | None = None,
    condition: str | None = None,
    q: str | None = None,
    organization_id: str | None = None,
    page: int = 1,
    page_size: int = 20,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    rows, total = InventoryLedger(db).list_materials(
        identity,
        status=status_filter,
        is_surplus=is_surplus,
        condition=condition,
        q=q,
        organization_id=organization_id,
        page=page,
        page_size=page_size,
    )
    return _list_response(rows, total, page, page_size)


@router.get("/surplus/materials/surplus", response_model=MaterialListResponse)
def list_surplus(
    condition: str | None = None,
    min_quantity: Decimal | None = None,
    q: str | None = None,
    page: int = 1,
    page_size: int = 20,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    rows, total = InventoryLedger(db).list_surplus(
        identity,
        SurplusFilters(condition=condition, min_quantity=min_quantity, q=q),
        page=page,
        page_size=page_size,
    )
    return _list_response(rows, total, page, page_size)


@router.get("/surplus/materials/stats", response_model=MaterialStatsResponse)
def material_stats(identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    stats = InventoryLedger(db).stats(identity)
    return MaterialStatsResponse(**asdict(stats))


@router.get("/surplus/materials/{material_id}", response_model=MaterialResponse)
def get_material(material_id: str, identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return MaterialResponse.model_validate(InventoryLedger(db).get_material(identity, material_id))


@router.post("/surplus/materials", response_model=MaterialResponse, status_code=status.HTTP_201_CREATED)
def create_material(
    payload: MaterialCreateRequest,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    material = InventoryLedger(db).create_material(identity, MaterialDraft(**payload.model_dump()))
    return MaterialResponse.model_validate(material)


@router.patch("/surplus/materials/{material_id}", response_model=MaterialResponse)
def update_material(
    material_id: str,
    payload: MaterialUpdateRequest,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    changes.update(payload.model_extra or {})
    material = InventoryLedger(db).update_material(identity, material_id, changes)
    return MaterialResponse.model_validate(material)


@router.post("/surplus/materials/{material_id}/mark-surplus", response_model=MaterialResponse)
def mark_surplus(material_id: str, identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return MaterialResponse.model_validate(InventoryLedger(db).mark_surplus(identity, material_id))


@router.post("/surplus/materials/{material_id}/archive", response_model=MaterialResponse)
def archive_material(material_id: str, identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return MaterialResponse.model_validate(InventoryLedger(db).archive_material(identity, material_id))
