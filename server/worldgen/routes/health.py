# ─────────────────────────────────────────────────────────────────────────────
# Health Check Routes: liveness, readiness, metrics
# ─────────────────────────────────────────────────────────────────────────────
#   /health        → Liveness probe. "Is the process alive?" Near-zero cost.
#                    Returns 200 always.
#
#   /health/ready  → Readiness probe. "Can it serve traffic?"
#                    Requires the world service key; without it every job
#                    would fail in creating_world (and be refunded).
#                    Returns 503 if not ready.
#
#   /metrics       → JSON counters + per-stage latency percentiles.
# ─────────────────────────────────────────────────────────────────────────────

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from worldgen.cache.content_cache import ContentCache
from worldgen.dependencies import (
    get_content_cache,
    get_metrics,
    get_orchestrator,
    get_world_client,
)
from worldgen.schemas import LivenessResponse, ReadinessResponse
from worldgen.services.metrics import PipelineMetrics
from worldgen.services.pipeline import PipelineOrchestrator
from worldgen.services.world_client import WorldGenerationClient

router = APIRouter()


@router.get("/health", response_model=LivenessResponse)
async def liveness() -> LivenessResponse:
    """Liveness probe. Is the process alive?

    Keep it absolutely minimal: no deps, no I/O.
    """
    return LivenessResponse(status="ok")


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness(
    request: Request,
    world_client: WorldGenerationClient = Depends(get_world_client),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Readiness probe: 503 until the world service is configured."""
    ready = world_client.configured
    response = ReadinessResponse(
        status="ready" if ready else "not_ready",
        world_service_configured=ready,
        ledger_backend=request.app.state.credit_ledger.name,
        active_jobs=orchestrator.active_count,
    )
    return JSONResponse(
        status_code=200 if ready else 503,
        content=response.model_dump(),
    )


@router.get("/metrics")
async def metrics_snapshot(
    metrics: PipelineMetrics = Depends(get_metrics),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    cache: ContentCache = Depends(get_content_cache),
) -> dict:
    snapshot = metrics.snapshot()
    snapshot["active_jobs"] = orchestrator.active_count
    snapshot["content_cache"] = cache.stats()
    return snapshot
