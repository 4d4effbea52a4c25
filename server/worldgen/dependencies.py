# ─────────────────────────────────────────────────────────────────────────────
# Dependency Injection: FastAPI Depends() providers
# ─────────────────────────────────────────────────────────────────────────────
# State flows: lifespan creates → app.state stores → Depends() injects.
# No global variables. Every dependency is explicit in endpoint signatures.
# ─────────────────────────────────────────────────────────────────────────────


from fastapi import Request

from worldgen.cache.content_cache import ContentCache
from worldgen.config import Settings
from worldgen.services.control import PipelineController
from worldgen.services.job_store import JobStore
from worldgen.services.metrics import PipelineMetrics
from worldgen.services.pipeline import PipelineOrchestrator
from worldgen.services.rate_limiter import SlidingWindowRateLimiter
from worldgen.services.world_client import WorldGenerationClient


def get_controller(request: Request) -> PipelineController:
    """Inject PipelineController into endpoints via Depends()."""
    return request.app.state.pipeline_controller


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.pipeline_orchestrator


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_generation_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.generation_limiter


def get_world_client(request: Request) -> WorldGenerationClient:
    return request.app.state.world_client


def get_content_cache(request: Request) -> ContentCache:
    return request.app.state.content_cache


def get_metrics(request: Request) -> PipelineMetrics:
    return request.app.state.metrics


def get_settings_dep(request: Request) -> Settings:
    """Inject Settings into endpoints via Depends()."""
    return request.app.state.settings
