# ─────────────────────────────────────────────────────────────────────────────
# Pipeline Orchestrator: per-job world generation state machine
# ─────────────────────────────────────────────────────────────────────────────
# Control surface hands over a created job; this owns everything after:
#   queued → orchestrating → generating_image → creating_world
#          → loading_result → complete
# with `error` and `cancelled` reachable from every non-terminal state.
#
# Each job runs as its own asyncio.Task with a cancellation token
# (asyncio.Event). _run_guarded is the single task boundary: every failure
# path (stage error, unexpected exception, cancel, shutdown) ends there,
# which is where the job is marked terminal and the ledger settled.
#
# Progress ranges: orchestrating 0–15, generating_image 15–40,
# creating_world 40–90, loading_result 90–100. Published percent never
# goes backwards for a job.
# ─────────────────────────────────────────────────────────────────────────────

import asyncio
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

import structlog
from opentelemetry import trace

from worldgen.config import Settings
from worldgen.exceptions import (
    ExternalServiceError,
    JobCancelledError,
    NoImageAvailableError,
    WorldGenError,
)
from worldgen.pipeline.asset_paths import WorldAssets
from worldgen.pipeline.prompt_templates import (
    get_image_prompt,
    get_world_prompt,
    upload_file_name,
    world_display_name,
)
from worldgen.schemas import Job, JobResult, JobStatus, ProgressEvent
from worldgen.services.content import ContentClient, empty_content
from worldgen.services.image_client import ImageClient, ImageInput
from worldgen.services.job_store import JobStore
from worldgen.services.ledger import CreditSettlement
from worldgen.services.metrics import PipelineMetrics
from worldgen.services.progress import ProgressPublisher
from worldgen.services.world_client import WorldGenerationClient

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

# Shown while the world service works; one per poll attempt, then silence
# apart from a heartbeat so the client knows the job is still alive.
_POLL_MESSAGES: tuple[tuple[int, str], ...] = (
    (55, "Analyzing depth information..."),
    (60, "Extracting scene geometry..."),
    (65, "Building point cloud..."),
    (70, "Optimizing gaussian splats..."),
    (75, "Generating view-dependent colors..."),
    (80, "Refining surface details..."),
    (85, "Compressing world data..."),
)
_HEARTBEAT_EVERY = 12  # poll attempts (~1 minute at 5s)

SHUTDOWN_GRACE_SECONDS = 5.0


@dataclass
class _JobRun:
    """Runtime-only state of one pipeline task (never exposed to readers)."""

    job_id: str
    cancel: asyncio.Event
    image: ImageInput | None = None
    image_url: str | None = None
    progress: int = 0
    task: asyncio.Task | None = None
    timings_ms: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class _WorldOutput:
    world_id: str
    operation_id: str
    assets: WorldAssets


class PipelineOrchestrator:
    """Drives each job's stages and reconciles job state with the ledger."""

    def __init__(
        self,
        store: JobStore,
        publisher: ProgressPublisher,
        settlement: CreditSettlement,
        world_client: WorldGenerationClient,
        image_client: ImageClient,
        content_client: ContentClient,
        settings: Settings,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._settlement = settlement
        self._world = world_client
        self._images = image_client
        self._content = content_client
        self._settings = settings
        self._metrics = metrics
        self._runs: dict[str, _JobRun] = {}

    # ── Task lifecycle ───────────────────────────────────────────────────────

    def launch(
        self,
        job_id: str,
        image: ImageInput | None = None,
        image_url: str | None = None,
    ) -> asyncio.Task:
        """Spawn the job's pipeline task and return immediately."""
        if job_id in self._runs:
            raise ValueError(f"Job '{job_id}' is already running")
        run = _JobRun(job_id=job_id, cancel=asyncio.Event(), image=image, image_url=image_url)
        self._runs[job_id] = run
        run.task = asyncio.create_task(self._run_guarded(run), name=f"pipeline:{job_id}")
        return run.task

    def cancel(self, job_id: str) -> bool:
        """Set the job's cancellation token. False if the job isn't running."""
        run = self._runs.get(job_id)
        if run is None:
            return False
        run.cancel.set()
        logger.info("cancel_requested", job_id=job_id)
        return True

    def is_running(self, job_id: str) -> bool:
        return job_id in self._runs

    @property
    def active_count(self) -> int:
        return len(self._runs)

    async def shutdown(self) -> None:
        """Interrupt every in-flight task (server exit). Jobs end in `error`."""
        tasks = [run.task for run in self._runs.values() if run.task is not None]
        if not tasks:
            return
        logger.info("pipeline_shutdown", active_jobs=len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)

    # ── Task boundary ────────────────────────────────────────────────────────

    async def _run_guarded(self, run: _JobRun) -> None:
        """Run all stages. Nothing escapes except task cancellation."""
        structlog.contextvars.bind_contextvars(job_id=run.job_id)
        start = time.perf_counter()
        try:
            with tracer.start_as_current_span("pipeline") as span:
                span.set_attribute("job_id", run.job_id)
                await self._run_stages(run)
        except JobCancelledError:
            await self._finish_cancelled(run)
        except asyncio.CancelledError:
            await self._finish_error(run, "Pipeline interrupted by server shutdown")
            raise
        except WorldGenError as e:
            await self._finish_error(run, e.message)
        except Exception:
            logger.exception("pipeline_unexpected_error")
            await self._finish_error(run, "Internal pipeline error")
        finally:
            self._runs.pop(run.job_id, None)
            logger.info(
                "pipeline_finished",
                total_ms=round((time.perf_counter() - start) * 1000, 1),
                stages_ms=run.timings_ms,
            )
            structlog.contextvars.unbind_contextvars("job_id")

    async def _run_stages(self, run: _JobRun) -> None:
        job = self._store.require(run.job_id)

        with self._stage(run, JobStatus.ORCHESTRATING):
            await self._orchestrating(run, job)

        with self._stage(run, JobStatus.GENERATING_IMAGE):
            await self._generating_image(run, job)

        # Precondition for creating_world: some image source exists.
        if run.image is None and run.image_url is None:
            raise NoImageAvailableError()

        with self._stage(run, JobStatus.CREATING_WORLD):
            world = await self._creating_world(run, job)

        with self._stage(run, JobStatus.LOADING_RESULT):
            await self._loading_result(run, world)

    # ── Stages ───────────────────────────────────────────────────────────────

    async def _orchestrating(self, run: _JobRun, job: Job) -> None:
        await self._enter(
            run, JobStatus.ORCHESTRATING, 5, "Analyzing your concept...",
            details="Understanding the scene requirements",
        )
        try:
            content = await self._content.shape(job.concept)
        except Exception as e:
            # Cosmetic content: degrade, never fail the job.
            logger.warning("content_fallback", error=str(e))
            if self._metrics:
                self._metrics.inc("content_fallbacks")
            content = empty_content(job.concept)

        self._store.merge(run.job_id, content=content)
        await self._emit(
            run, JobStatus.ORCHESTRATING.value, 15, "Preparing scene parameters...",
            details="Optimizing for 3D world generation",
            payload={"content": content},
        )

    async def _generating_image(self, run: _JobRun, job: Job) -> None:
        await self._enter(run, JobStatus.GENERATING_IMAGE, 20, "Initializing image generation...")
        stage = JobStatus.GENERATING_IMAGE.value

        if run.image is not None:
            await self._emit(run, stage, 35, "Using uploaded image...", details="Processing your custom image")
        elif run.image_url is not None:
            await self._emit(run, stage, 35, "Using linked image...", details=run.image_url)
        else:
            await self._emit(
                run, stage, 25, "Creating visual representation...",
                details=f"Generating image for: {job.concept}",
            )
            try:
                run.image = await self._images.generate(get_image_prompt(job.concept))
            except ExternalServiceError as e:
                logger.warning("image_generation_failed", error=e.message)
                if self._metrics:
                    self._metrics.inc("image_fallbacks")
                fallback_url = self._settings.fallback_image_url
                if fallback_url:
                    run.image_url = fallback_url
                    await self._emit(
                        run, stage, 30, "Using fallback image...",
                        details="Image generation unavailable, using placeholder",
                    )
                else:
                    await self._emit(run, stage, 30, "Image generation unavailable")
            else:
                await self._emit(
                    run, stage, 35, "Image generated successfully!",
                    details="Your scene has been visualized",
                    payload={
                        "generatedImage": run.image.base64,
                        "generatedImageMime": run.image.mime_type,
                    },
                )

        await self._emit(run, stage, 38, "Preparing for 3D conversion...")

    async def _creating_world(self, run: _JobRun, job: Job) -> _WorldOutput:
        await self._enter(
            run, JobStatus.CREATING_WORLD, 40, "Initializing 3D world generation...",
            details="Connecting to world engine",
        )
        stage = JobStatus.CREATING_WORLD.value
        if not self._world.configured:
            raise ExternalServiceError("world service", "API key not configured")

        media_asset_id = None
        if run.image is not None:
            await self._emit(run, stage, 45, "Uploading image to world engine...")
            extension = run.image.mime_type.rsplit("/", 1)[-1]
            media_asset_id = await self._world.upload_image(
                upload_file_name(job.concept, extension), run.image.data, run.image.mime_type
            )
            self._check_cancel(run)

        prompt = get_world_prompt(job.concept, job.quality)
        await self._emit(run, stage, 50, "Generating 3D world...", details=f'Prompt: "{prompt}"')
        operation_id = await self._world.submit_generation(
            world_display_name(job.concept),
            prompt,
            media_asset_id=media_asset_id,
            image_url=None if media_asset_id else run.image_url,
        )
        self._store.merge(run.job_id, result=JobResult(operation_id=operation_id))

        async def on_attempt(attempt: int, max_attempts: int) -> None:
            if attempt <= len(_POLL_MESSAGES):
                percent, message = _POLL_MESSAGES[attempt - 1]
                await self._emit(run, stage, percent, message, details="Neural radiance field processing")
            elif attempt % _HEARTBEAT_EVERY == 0:
                await self._emit(
                    run, stage, run.progress, "Still building your world...",
                    details=f"Check {attempt} of {max_attempts}",
                )

        world_id = await self._world.poll_operation(operation_id, cancel=run.cancel, on_attempt=on_attempt)
        self._check_cancel(run)
        assets = await self._world.fetch_world_assets(world_id, cancel=run.cancel)
        return _WorldOutput(world_id=world_id, operation_id=operation_id, assets=assets)

    async def _loading_result(self, run: _JobRun, world: _WorldOutput) -> None:
        await self._enter(
            run, JobStatus.LOADING_RESULT, 90, "Preparing 3D scene for viewing...",
            details="Assembling world assets",
        )
        result = JobResult(
            world_url=world.assets.world_url,
            world_url_low_res=world.assets.world_url_low_res,
            collider_mesh_url=world.assets.collider_mesh_url,
            world_id=world.world_id,
            operation_id=world.operation_id,
            preview_image_base64=run.image.base64 if run.image else None,
            preview_image_mime=run.image.mime_type if run.image else None,
        )
        await self._emit(run, JobStatus.LOADING_RESULT.value, 95, "Initializing renderer...")

        self._store.merge(
            run.job_id,
            status=JobStatus.COMPLETE,
            result=result,
            completed_at=time.time(),
        )
        if self._metrics:
            self._metrics.inc("jobs_completed")
        logger.info("pipeline_complete", world_id=world.world_id, world_url=world.assets.world_url)
        await self._emit(
            run, JobStatus.COMPLETE.value, 100, "Your 3D world is ready!",
            payload={
                "worldUrl": result.world_url,
                "worldUrlLowRes": result.world_url_low_res,
                "colliderMeshUrl": result.collider_mesh_url,
                "worldId": result.world_id,
                "thumbnailBase64": result.preview_image_base64,
                "completed": True,
            },
        )

    # ── Terminal paths ───────────────────────────────────────────────────────

    async def _finish_error(self, run: _JobRun, message: str) -> None:
        try:
            if self._already_terminal(run.job_id):
                return
            job = self._store.merge(
                run.job_id, status=JobStatus.ERROR, error=message, completed_at=time.time()
            )
            if job.status is not JobStatus.ERROR:
                return
            logger.error("pipeline_failed", error=message, progress=run.progress)
            if self._metrics:
                self._metrics.inc("jobs_failed")
            await self._settlement.refund(job, reason=f"pipeline_error: {message}")
            await self._emit(
                run, JobStatus.ERROR.value, run.progress, f"Pipeline failed: {message}",
                payload={"error": message},
            )
        except Exception:
            # Last line of defence: the task must not die with an unlogged error.
            logger.exception("pipeline_error_handling_failed")

    async def _finish_cancelled(self, run: _JobRun) -> None:
        try:
            if self._already_terminal(run.job_id):
                return
            job = self._store.merge(
                run.job_id, status=JobStatus.CANCELLED, completed_at=time.time()
            )
            if job.status is not JobStatus.CANCELLED:
                return
            logger.info("pipeline_cancelled", progress=run.progress)
            if self._metrics:
                self._metrics.inc("jobs_cancelled")
            if self._settings.refund_on_cancel:
                await self._settlement.refund(job, reason="cancelled")
            await self._emit(run, JobStatus.CANCELLED.value, run.progress, "Generation cancelled")
        except Exception:
            logger.exception("pipeline_cancel_handling_failed")

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _already_terminal(self, job_id: str) -> bool:
        """True when the job has finished (or been evicted); its outcome stays."""
        job = self._store.get(job_id)
        return job is None or job.status.is_terminal

    @contextmanager
    def _stage(self, run: _JobRun, status: JobStatus) -> Iterator[None]:
        """OTel span + latency sample around one stage."""
        start = time.perf_counter()
        with tracer.start_as_current_span(f"stage.{status.value}"):
            try:
                yield
            finally:
                elapsed = round((time.perf_counter() - start) * 1000, 1)
                run.timings_ms[status.value] = elapsed
                if self._metrics:
                    self._metrics.record_stage(status.value, elapsed)

    def _check_cancel(self, run: _JobRun) -> None:
        if run.cancel.is_set():
            raise JobCancelledError()

    async def _enter(
        self,
        run: _JobRun,
        status: JobStatus,
        percent: int,
        message: str,
        details: str | None = None,
    ) -> None:
        """Stage entry: cancellation check, status write, progress event."""
        self._check_cancel(run)
        self._store.merge(run.job_id, status=status)
        logger.info("stage_started", stage=status.value)
        await self._emit(run, status.value, percent, message, details=details)

    async def _emit(
        self,
        run: _JobRun,
        stage: str,
        percent: int,
        message: str,
        details: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        percent = max(run.progress, min(percent, 100))
        run.progress = percent
        self._store.merge(run.job_id, progress=percent, stage_message=message)
        await self._publisher.publish(
            ProgressEvent(
                job_id=run.job_id,
                stage=stage,
                progress=percent,
                message=message,
                details=details,
                payload=payload or {},
            )
        )
