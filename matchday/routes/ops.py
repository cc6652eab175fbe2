"""Internal ops routes: health, metrics, queue and dead-letter inspection, predictor admin.

Auth:
- /health, /metrics: public (scraped by the platform / Prometheus)
- /ops/*: X-API-Key when API_KEY is configured
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from matchday.jobs.tracking import get_last_success_at
from matchday.scoring.settlement import rescore_fixture
from matchday.security import verify_api_key
from matchday.service import MatchdayService
from matchday.telemetry.metrics import get_metrics_text

router = APIRouter(tags=["ops"])
ops_router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(verify_api_key)])


class HealthResponse(BaseModel):
    status: str
    role: str
    last_live_poll_at: Optional[str] = None


class DisableRequest(BaseModel):
    reason: str = "manual"


def get_service(request: Request) -> MatchdayService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return service


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    service = get_service(request)
    last_poll = await get_last_success_at(service.session_factory, "live_poll")
    return HealthResponse(
        status="ok",
        role=service.role,
        last_live_poll_at=last_poll.isoformat() if last_poll else None,
    )


@router.get("/metrics")
async def prometheus_metrics():
    content, content_type = get_metrics_text()
    return PlainTextResponse(content=content, media_type=content_type)


@ops_router.get("/queue")
async def queue_status(service: MatchdayService = Depends(get_service)):
    return await service.queue.counts()


@ops_router.get("/dead-letter")
async def list_dead_letter(limit: int = 100, service: MatchdayService = Depends(get_service)):
    entries = await service.queue.list_dead(limit=min(max(limit, 1), 1000))
    return {"count": len(entries), "jobs": [e.as_dict() for e in entries]}


@ops_router.post("/dead-letter/{job_id}/retry")
async def retry_dead_letter(job_id: str, service: MatchdayService = Depends(get_service)):
    if not await service.queue.retry_dead(job_id):
        raise HTTPException(status_code=404, detail=f"No dead-lettered job {job_id}")
    return {"status": "requeued", "job_id": job_id}


@ops_router.get("/predictors/health")
async def predictors_health(service: MatchdayService = Depends(get_service)):
    return await service.health.get_health_summary()


@ops_router.post("/predictors/{predictor_id}/enable")
async def enable_predictor(predictor_id: int, service: MatchdayService = Depends(get_service)):
    if not await service.health.re_enable_predictor(predictor_id):
        raise HTTPException(status_code=404, detail=f"Predictor {predictor_id} not found")
    return {"status": "enabled", "predictor_id": predictor_id}


@ops_router.post("/predictors/{predictor_id}/disable")
async def disable_predictor(
    predictor_id: int,
    body: DisableRequest,
    service: MatchdayService = Depends(get_service),
):
    if not await service.health.disable_predictor(predictor_id, body.reason):
        raise HTTPException(status_code=404, detail=f"Predictor {predictor_id} not found")
    return {"status": "disabled", "predictor_id": predictor_id}


@ops_router.post("/fixtures/{fixture_id}/rescore")
async def rescore(fixture_id: int, service: MatchdayService = Depends(get_service)):
    return await rescore_fixture(
        service.session_factory,
        fixture_id,
        service.poller.invalidator,
    )
