# ─────────────────────────────────────────────────────────────────────────────
# Debug Routes: for development and pipeline debugging
# ─────────────────────────────────────────────────────────────────────────────
# Only mounted when settings.enable_debug_routes is True. Never enable on a
# public deployment: /debug/jobs lists every owner's jobs.
# ─────────────────────────────────────────────────────────────────────────────

import time

from fastapi import APIRouter, Depends, Request

from worldgen.cache.content_cache import ContentCache
from worldgen.dependencies import (
    get_content_cache,
    get_generation_limiter,
    get_job_store,
    get_orchestrator,
)
from worldgen.services.job_store import JobStore
from worldgen.services.pipeline import PipelineOrchestrator
from worldgen.services.rate_limiter import SlidingWindowRateLimiter

router = APIRouter()

_start_time = time.time()


@router.get("/jobs")
async def list_jobs(
    store: JobStore = Depends(get_job_store),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Job summaries, newest first. Results and content are omitted."""
    jobs = sorted(store.list_jobs(), key=lambda j: j.created_at, reverse=True)
    return {
        "count": len(jobs),
        "active": orchestrator.active_count,
        "jobs": [
            {
                "jobId": job.job_id,
                "status": job.status.value,
                "progress": job.progress,
                "owner": job.owner,
                "concept": job.concept,
                "error": job.error,
                "running": orchestrator.is_running(job.job_id),
            }
            for job in jobs
        ],
    }


@router.get("/limits/{client_key}")
async def rate_limit_usage(
    client_key: str,
    limiter: SlidingWindowRateLimiter = Depends(get_generation_limiter),
) -> dict:
    return {
        "client": client_key,
        "used": limiter.usage(client_key),
        "limit": limiter.max_requests,
    }


@router.get("/ledger/{owner_id}")
async def ledger_balance(owner_id: str, request: Request) -> dict:
    """Balance lookup, only meaningful for the in-memory dev ledger."""
    ledger = request.app.state.credit_ledger
    if not hasattr(ledger, "balance"):
        return {"owner": owner_id, "backend": ledger.name, "balance": None}
    return {"owner": owner_id, "backend": ledger.name, "balance": ledger.balance(owner_id)}


@router.get("/cache/stats")
async def cache_stats(cache: ContentCache = Depends(get_content_cache)) -> dict:
    """Return content cache statistics."""
    return {**cache.stats(), "uptime_seconds": int(time.time() - _start_time)}


@router.post("/cache/clear")
async def cache_clear(cache: ContentCache = Depends(get_content_cache)) -> dict:
    cache.clear()
    return {"status": "cleared"}
