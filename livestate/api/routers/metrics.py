from fastapi import APIRouter, Response

from livestate.api.dependency import Runtime
from livestate.domain.live.stream.metrics import METRICS_CONTENT_TYPE

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def metrics(runtime: Runtime):
    return Response(content=runtime.metrics.render(), media_type=METRICS_CONTENT_TYPE)
