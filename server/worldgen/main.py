# ─────────────────────────────────────────────────────────────────────────────
# FastAPI Application Factory + Lifespan
# ─────────────────────────────────────────────────────────────────────────────
# Entrypoint: uvicorn worldgen.main:create_app --factory --host 0.0.0.0 --port 3001
# The --factory flag tells uvicorn to call create_app() for the app instance.
# ─────────────────────────────────────────────────────────────────────────────

import os
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from worldgen.cache.content_cache import ContentCache
from worldgen.config import Settings, get_settings
from worldgen.exceptions import register_exception_handlers
from worldgen.logging_config import configure_logging
from worldgen.middleware import RequestContextMiddleware
from worldgen.rate_limit import limiter
from worldgen.routes import debug, health, pipeline
from worldgen.services.content import ContentClient
from worldgen.services.control import PipelineController
from worldgen.services.image_client import ImageClient
from worldgen.services.job_store import JobStore
from worldgen.services.ledger import (
    CreditLedger,
    CreditSettlement,
    HttpCreditLedger,
    InMemoryCreditLedger,
)
from worldgen.services.metrics import PipelineMetrics
from worldgen.services.pipeline import PipelineOrchestrator
from worldgen.services.progress import ProgressPublisher
from worldgen.services.rate_limiter import SlidingWindowRateLimiter
from worldgen.services.world_client import WorldGenerationClient

logger = structlog.get_logger(__name__)


async def _rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Return a structured JSON 429 consistent with WorldGenError responses."""
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        method=request.method,
        detail=str(exc.detail),
    )
    return JSONResponse(
        status_code=429,
        content={"error": f"Rate limit exceeded: {exc.detail}", "type": "RateLimitExceeded"},
    )


def _configure_otel(exporter_type: str) -> None:
    """Configure OpenTelemetry tracing.

    Supports "console" for dev and "gcp" for Cloud Trace.
    No-op if the exporter type is unknown.
    """
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider()

    if exporter_type == "console":
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter

        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    elif exporter_type == "gcp":
        try:
            from opentelemetry.exporter.cloud_trace import CloudTraceSpanExporter

            provider.add_span_processor(
                BatchSpanProcessor(CloudTraceSpanExporter())
            )
        except ImportError:
            logger.warning("gcp_trace_exporter_not_available")
            return
    else:
        logger.warning("unknown_otel_exporter", exporter=exporter_type)
        return

    from opentelemetry import trace

    trace.set_tracer_provider(provider)
    logger.info("otel_configured", exporter=exporter_type)


def _build_ledger(settings: Settings, client: httpx.AsyncClient) -> CreditLedger:
    if settings.ledger_url:
        return HttpCreditLedger(
            client, settings.ledger_url, settings.ledger_api_key.get_secret_value()
        )
    logger.warning(
        "in_memory_ledger_enabled",
        reason="LEDGER_URL not set",
        starting_credits=settings.dev_starting_credits,
    )
    return InMemoryCreditLedger(starting_balance=settings.dev_starting_credits)


def build_services(
    app: FastAPI,
    settings: Settings,
    client: httpx.AsyncClient,
    ledger: CreditLedger | None = None,
) -> None:
    """Create every stateful component and store it in app.state.

    Split out of lifespan so tests can wire an app around a mock transport
    without running the ASGI lifespan.
    """
    metrics = PipelineMetrics()
    ledger = ledger if ledger is not None else _build_ledger(settings, client)
    settlement = CreditSettlement(ledger, settings.credit_cost, metrics=metrics)
    store = JobStore(ttl_seconds=settings.job_ttl_seconds)
    publisher = ProgressPublisher()
    content_cache = ContentCache(capacity=settings.content_cache_size)
    world_client = WorldGenerationClient(client, settings)

    orchestrator = PipelineOrchestrator(
        store=store,
        publisher=publisher,
        settlement=settlement,
        world_client=world_client,
        image_client=ImageClient(client, settings),
        content_client=ContentClient(client, settings, content_cache),
        settings=settings,
        metrics=metrics,
    )
    generation_limiter = SlidingWindowRateLimiter(
        settings.rate_limit_max_requests, settings.rate_limit_window_seconds
    )
    controller = PipelineController(
        store=store,
        limiter=generation_limiter,
        settlement=settlement,
        orchestrator=orchestrator,
        settings=settings,
        metrics=metrics,
    )

    app.state.settings = settings
    app.state.http_client = client
    app.state.metrics = metrics
    app.state.credit_ledger = ledger
    app.state.job_store = store
    app.state.progress_publisher = publisher
    app.state.content_cache = content_cache
    app.state.world_client = world_client
    app.state.generation_limiter = generation_limiter
    app.state.pipeline_orchestrator = orchestrator
    app.state.pipeline_controller = controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown lifecycle.

    One shared httpx.AsyncClient serves the world, image, content and ledger
    calls. On shutdown in-flight jobs are interrupted (→ error + refund)
    before the client closes.
    """
    settings = get_settings()

    # ── Configure OpenTelemetry ──────────────────────────────────────────────
    otel_exporter = os.environ.get("OTEL_EXPORTER", "")
    if otel_exporter:
        _configure_otel(otel_exporter)

    client = httpx.AsyncClient(timeout=httpx.Timeout(settings.world_request_timeout_seconds))
    build_services(app, settings, client)

    if not settings.world_api_key.get_secret_value():
        logger.warning("world_service_unconfigured", reason="WORLD_API_KEY not set")
    logger.info(
        "server_started",
        port=settings.port,
        ledger=app.state.credit_ledger.name,
        rate_limit=f"{settings.rate_limit_max_requests}/{int(settings.rate_limit_window_seconds)}s",
    )

    yield  # App is running, serving requests

    # Shutdown
    await app.state.pipeline_orchestrator.shutdown()
    await client.aclose()


def _parse_origins(allowed_origins: str) -> list[str]:
    """Parse comma-separated origin string into a list.

    Returns ``["*"]`` if the input is empty (development mode).
    Strips whitespace from each origin.
    """
    if not allowed_origins.strip():
        return ["*"]
    return [origin.strip() for origin in allowed_origins.split(",") if origin.strip()]


def create_app() -> FastAPI:
    """Application factory. Invoked by: uvicorn worldgen.main:create_app --factory"""
    settings = get_settings()
    configure_logging(log_level=settings.log_level, json_output=settings.log_json)

    app = FastAPI(
        title="World Generation Pipeline",
        description="Concept-to-3D-world generation orchestrator",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ── Attach rate limiter to app state (required by slowapi) ───────────────
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ── Middleware stack ─────────────────────────────────────────────────────
    # Starlette applies middleware in reverse order of add_middleware calls:
    #   CORS → RequestContext → route handler
    app.add_middleware(RequestContextMiddleware)

    origins = _parse_origins(settings.allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "X-User-Id", "X-Request-ID"],
        expose_headers=["Retry-After", "X-Request-ID"],
    )

    # ── Exception handlers ───────────────────────────────────────────────────
    register_exception_handlers(app)

    # ── Routes ───────────────────────────────────────────────────────────────
    app.include_router(health.router, tags=["health"])
    app.include_router(pipeline.router, tags=["pipeline"])
    if settings.enable_debug_routes:
        app.include_router(debug.router, prefix="/debug", tags=["debug"])

    return app
