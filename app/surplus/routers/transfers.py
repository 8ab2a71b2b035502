from typing import Callable

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from app.surplus.core.config import settings
from app.surplus.core.context import IdentityContext
from app.surplus.core.deps import require_identity
from app.surplus.core.error_catalog import ErrorCatalog
from app.surplus.core.pagination import resolve_page
from app.surplus.core.retry import with_retries
from app.surplus.db.session import get_db
from app.surplus.schemas.errors import ApiErrorResponse, ApiValidationErrorResponse
from app.surplus.schemas.transfers import (
    TransferActionRequest,
    TransferCreateRequest,
    TransferListResponse,
    TransferResponse,
)
from app.surplus.services.idempotency import IdempotencyService, extract_idempotency_key
from app.surplus.services.transfers import (
    TransferDraft,
    TransferListFilters,
    TransferWorkflowEngine,
    WorkflowResult,
)

router = APIRouter()

TRANSITION_RESPONSES = {
    403: {"description": "Authorization gate denied the action", "model": ApiErrorResponse},
    404: {"description": "Transfer or material not found", "model": ApiErrorResponse},
    409: {
        "description": "Status, quantity or idempotency conflict",
        "model": ApiErrorResponse,
        "content": {
            "application/json": {
                "example": {
                    "code": "INSUFFICIENT_QUANTITY",
                    "message": "Insufficient quantity available",
                    "details": {"available": "5", "requested": "8"},
                    "trace_id": "trace-123",
                }
            }
        },
    },
    422: {"description": "Validation error", "model": ApiValidationErrorResponse},
}


def _transfer_response(transfer) -> TransferResponse:
    return TransferResponse.model_validate(transfer)


def _run_transition(
    request: Request,
    identity: IdentityContext,
    db,
    payload: dict,
    transition: Callable[[], WorkflowResult],
    status_code: int = status.HTTP_200_OK,
):
    context = None
    idempotency_key = extract_idempotency_key(request.headers)
    if idempotency_key:
        context, replay = IdempotencyService(db).start(
            organization_id=identity.organization_id,
            endpoint=str(request.url.path),
            method=request.method,
            idempotency_key=idempotency_key,
            request_hash=IdempotencyService.fingerprint(payload),
        )
        if replay:
            return JSONResponse(
                status_code=replay.status_code,
                content=replay.response_body,
                headers={"X-Idempotency-Result": ErrorCatalog.IDEMPOTENCY_REPLAY.code},
            )
        request.state.idempotency = context

    transfer = with_retries(transition).unwrap()
    body = _transfer_response(transfer).model_dump(mode="json")
    if context is not None:
        context.record_success(status_code=status_code, response_body=body)
    return JSONResponse(status_code=status_code, content=body)


@router.get("/surplus/transfers", response_model=TransferListResponse)
def list_transfers(
    direction: str | None = None,
    status_filter: str | None = Query(None, alias="status"),
    material_id: str | None = None,
    requested_by: str | None = None,
    q: str | None = None,
    page: int = 1,
    page_size: int = 20,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    rows, total = TransferWorkflowEngine(db).list_transfers(
        identity,
        TransferListFilters(
            direction=direction,
            status=status_filter,
            material_id=material_id,
            requested_by=requested_by,
            q=q,
        ),
        page=page,
        page_size=page_size,
    )
    page_request = resolve_page(page, page_size, max_page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE)
    return TransferListResponse(
        rows=[_transfer_response(row) for row in rows],
        total=total,
        page=page_request.page,
        page_size=page_request.page_size,
    )


@router.get("/surplus/transfers/{transfer_id}", response_model=TransferResponse)
def get_transfer(transfer_id: str, identity: IdentityContext = Depends(require_identity), db=Depends(get_db)):
    return _transfer_response(TransferWorkflowEngine(db).get_transfer(identity, transfer_id))


@router.post("/surplus/transfers", response_model=TransferResponse, status_code=status.HTTP_201_CREATED, responses=TRANSITION_RESPONSES)
def create_transfer(
    request: Request,
    payload: TransferCreateRequest,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    engine = TransferWorkflowEngine(db)
    draft = TransferDraft(**payload.model_dump())
    return _run_transition(
        request,
        identity,
        db,
        payload.model_dump(mode="json"),
        lambda: engine.create_transfer_request(identity, draft),
        status_code=status.HTTP_201_CREATED,
    )


@router.post("/surplus/transfers/{transfer_id}/approve", response_model=TransferResponse, responses=TRANSITION_RESPONSES)
def approve_transfer(
    transfer_id: str,
    request: Request,
    payload: TransferActionRequest | None = None,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    payload = payload or TransferActionRequest()
    engine = TransferWorkflowEngine(db)
    return _run_transition(
        request,
        identity,
        db,
        payload.model_dump(mode="json"),
        lambda: engine.approve(identity, transfer_id, payload.comment),
    )


@router.post("/surplus/transfers/{transfer_id}/reject", response_model=TransferResponse, responses=TRANSITION_RESPONSES)
def reject_transfer(
    transfer_id: str,
    request: Request,
    payload: TransferActionRequest | None = None,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    payload = payload or TransferActionRequest()
    engine = TransferWorkflowEngine(db)
    return _run_transition(
        request,
        identity,
        db,
        payload.model_dump(mode="json"),
        lambda: engine.reject(identity, transfer_id, payload.comment),
    )


@router.post("/surplus/transfers/{transfer_id}/cancel", response_model=TransferResponse, responses=TRANSITION_RESPONSES)
def cancel_transfer(
    transfer_id: str,
    request: Request,
    payload: TransferActionRequest | None = None,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    payload = payload or TransferActionRequest()
    engine = TransferWorkflowEngine(db)
    return _run_transition(
        request,
        identity,
        db,
        payload.model_dump(mode="json"),
        lambda: engine.cancel(identity, transfer_id, payload.comment),
    )


@router.post("/surplus/transfers/{transfer_id}/complete", response_model=TransferResponse, responses=TRANSITION_RESPONSES)
def complete_transfer(
    transfer_id: str,
    request: Request,
    payload: TransferActionRequest | None = None,
    identity: IdentityContext = Depends(require_identity),
    db=Depends(get_db),
):
    payload = payload or TransferActionRequest()
    engine = TransferWorkflowEngine(db)
    return _run_transition(
        request,
        identity,
        db,
        payload.model_dump(mode="json"),
        lambda: engine.complete(identity, transfer_id, payload.comment),
    )
