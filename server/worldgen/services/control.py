# ─────────────────────────────────────────────────────────────────────────────
# Pipeline Controller: start / status / cancel behind the HTTP routes
# ─────────────────────────────────────────────────────────────────────────────
# start_job order matters:
#   validate → rate limit → debit → create job → launch task
# A job exists only if its debit succeeded (or the caller is privileged).
# If anything after the debit fails, the debit is refunded before the
# error propagates.
# ─────────────────────────────────────────────────────────────────────────────

from dataclasses import dataclass

import structlog

from worldgen.auth import Identity
from worldgen.config import Settings
from worldgen.exceptions import InsufficientCreditsError, InvalidRequestError, RateLimitedError
from worldgen.schemas import Job, Quality
from worldgen.services.image_client import ImageInput
from worldgen.services.job_store import JobStore, new_job_id
from worldgen.services.ledger import CreditSettlement
from worldgen.services.metrics import PipelineMetrics
from worldgen.services.pipeline import PipelineOrchestrator
from worldgen.services.rate_limiter import SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StartJobResult:
    job_id: str
    credits_remaining: int | None


class PipelineController:
    def __init__(
        self,
        store: JobStore,
        limiter: SlidingWindowRateLimiter,
        settlement: CreditSettlement,
        orchestrator: PipelineOrchestrator,
        settings: Settings,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._settlement = settlement
        self._orchestrator = orchestrator
        self._settings = settings
        self._metrics = metrics

    async def start_job(
        self,
        identity: Identity,
        concept: str | None,
        quality: str | None = None,
        image: ImageInput | None = None,
        image_url: str | None = None,
    ) -> StartJobResult:
        concept = self._validate_concept(concept)
        tier = self._parse_quality(quality)
        if image is not None:
            self._validate_image(image)
        if image_url is not None:
            image_url = self._validate_image_url(image_url)

        decision = self._limiter.admit(identity.user_id, privileged=identity.privileged)
        if not decision.allowed:
            if self._metrics:
                self._metrics.inc("rate_limited")
            raise RateLimitedError(self._limiter.max_requests, decision.retry_after)

        job_id = new_job_id()
        try:
            balance = await self._settlement.charge(identity.user_id, job_id, identity.privileged)
        except InsufficientCreditsError:
            if self._metrics:
                self._metrics.inc("insufficient_credits")
            raise

        job = Job(
            job_id=job_id,
            concept=concept,
            quality=tier,
            owner=identity.user_id,
            privileged=identity.privileged,
            credits_charged=0 if identity.privileged else self._settlement.cost,
        )
        try:
            self._store.create(job)
            self._orchestrator.launch(job_id, image=image, image_url=image_url)
        except Exception:
            logger.exception("job_start_failed", job_id=job_id)
            await self._settlement.refund(job, reason="job_start_failed")
            raise

        if self._metrics:
            self._metrics.inc("jobs_started")
        logger.info(
            "job_started",
            job_id=job_id,
            owner=identity.user_id,
            privileged=identity.privileged,
            has_image=image is not None,
            quality=tier.value,
        )
        return StartJobResult(job_id=job_id, credits_remaining=balance)

    def get_status(self, job_id: str) -> Job:
        return self._store.require(job_id)

    def cancel(self, job_id: str) -> Job:
        """Request cancellation. Idempotent; terminal jobs are returned as-is."""
        job = self._store.require(job_id)
        if job.status.is_terminal:
            return job
        job = self._store.merge(job_id, cancel_requested=True)
        self._orchestrator.cancel(job_id)
        return job

    # ── Validation ───────────────────────────────────────────────────────────

    def _validate_concept(self, concept: str | None) -> str:
        concept = (concept or "").strip()
        if not concept:
            raise InvalidRequestError("Concept is required")
        if len(concept) > self._settings.max_concept_length:
            raise InvalidRequestError(
                f"Concept must be at most {self._settings.max_concept_length} characters"
            )
        return concept

    @staticmethod
    def _parse_quality(quality: str | None) -> Quality:
        if not quality:
            return Quality.STANDARD
        try:
            return Quality(quality.strip().lower())
        except ValueError:
            allowed = ", ".join(q.value for q in Quality)
            raise InvalidRequestError(f"Quality must be one of: {allowed}") from None

    def _validate_image(self, image: ImageInput) -> None:
        if not image.mime_type.startswith("image/"):
            raise InvalidRequestError("Only image files are allowed")
        if not image.data:
            raise InvalidRequestError("Image file is empty")
        if len(image.data) > self._settings.max_image_bytes:
            limit_mb = self._settings.max_image_bytes // (1024 * 1024)
            raise InvalidRequestError(f"Image exceeds the {limit_mb}MB limit")

    @staticmethod
    def _validate_image_url(image_url: str) -> str:
        image_url = image_url.strip()
        if not image_url.startswith(("https://", "http://")):
            raise InvalidRequestError("imageUrl must be an http(s) URL")
        return image_url
