from fastapi import APIRouter, Response

from app.surplus.core.metrics import metrics

router = APIRouter()


@router.get("/surplus/ops/metrics")
def get_metrics():
    snapshot = metrics.render()
    return Response(content=snapshot.content, media_type=snapshot.content_type)
