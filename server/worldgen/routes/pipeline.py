# ─────────────────────────────────────────────────────────────────────────────
# /api/pipeline: start, status, cancel, live events (THIN)
# ─────────────────────────────────────────────────────────────────────────────
# Start accepts either a JSON body {concept, quality, imageUrl?} or a
# multipart form with the same fields plus an optional `image` file.
# Validation and ledger logic live in PipelineController; these handlers
# only translate HTTP into controller calls.
# ─────────────────────────────────────────────────────────────────────────────

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, WebSocket
from starlette.datastructures import UploadFile

from worldgen.auth import Identity, resolve_identity
from worldgen.dependencies import get_controller
from worldgen.exceptions import InvalidRequestError
from worldgen.rate_limit import http_rate_limit, limiter
from worldgen.schemas import CancelJobResponse, Job, ProgressEvent, StartJobResponse
from worldgen.services.control import PipelineController
from worldgen.services.image_client import ImageInput

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/pipeline")

# Close code for "no such job" on the events socket (4000–4999 is app-defined).
WS_JOB_NOT_FOUND = 4404


@router.post("/start", response_model=StartJobResponse)
@limiter.limit(http_rate_limit)
async def start_pipeline(
    request: Request,
    identity: Identity = Depends(resolve_identity),
    controller: PipelineController = Depends(get_controller),
) -> StartJobResponse:
    """Debit, create and launch a world generation job. Returns immediately."""
    fields, image = await _read_start_body(request)
    result = await controller.start_job(
        identity,
        concept=fields.get("concept"),
        quality=fields.get("quality"),
        image=image,
        image_url=fields.get("imageUrl") or None,
    )
    return StartJobResponse(job_id=result.job_id, credits_remaining=result.credits_remaining)


@router.get("/{job_id}/status", response_model=Job)
async def pipeline_status(
    job_id: str,
    controller: PipelineController = Depends(get_controller),
) -> Job:
    return controller.get_status(job_id)


@router.post("/{job_id}/cancel", response_model=CancelJobResponse)
async def cancel_pipeline(
    job_id: str,
    controller: PipelineController = Depends(get_controller),
) -> CancelJobResponse:
    """Request cancellation. 200 even when the job has already finished."""
    job = controller.cancel(job_id)
    return CancelJobResponse(job_id=job.job_id, status=job.status)


@router.websocket("/{job_id}/events")
async def pipeline_events(websocket: WebSocket, job_id: str) -> None:
    """Stream the job's progress events until a terminal one (or disconnect).

    Subscribers only see events published after they connect; a late
    client should read /status for the current state.
    """
    store = websocket.app.state.job_store
    publisher = websocket.app.state.progress_publisher

    await websocket.accept()
    job = store.get(job_id)
    if job is None:
        await websocket.close(code=WS_JOB_NOT_FOUND)
        return
    if job.status.is_terminal:
        await websocket.close()
        return

    finished = asyncio.Event()

    async def forward(event: ProgressEvent) -> None:
        await websocket.send_json(event.to_wire())
        if event.is_terminal:
            finished.set()

    publisher.subscribe(job_id, forward)
    # The job may have finished between the lookup and the subscribe.
    latest = store.get(job_id)
    if latest is None or latest.status.is_terminal:
        finished.set()

    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    done_waiter = asyncio.create_task(finished.wait())
    try:
        await asyncio.wait({disconnected, done_waiter}, return_when=asyncio.FIRST_COMPLETED)
        client_gone = disconnected.done()
    finally:
        publisher.unsubscribe(job_id, forward)
        for task in (disconnected, done_waiter):
            task.cancel()

    if not client_gone:
        await websocket.close()
    logger.debug("events_stream_closed", job_id=job_id)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _read_start_body(request: Request) -> tuple[dict[str, Any], ImageInput | None]:
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequestError("Request body is not valid JSON") from None
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return {k: v if v is None else str(v) for k, v in body.items()}, None

    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        fields = {k: v for k, v in form.items() if isinstance(v, str)}
        upload = form.get("image")
        image = None
        if isinstance(upload, UploadFile):
            image = await _read_upload(upload, request.app.state.settings.max_image_bytes)
        return fields, image

    raise InvalidRequestError("Expected a JSON or multipart/form-data body")


async def _read_upload(upload: UploadFile, max_bytes: int) -> ImageInput:
    """Read at most max_bytes + 1 so an oversized file is rejected without buffering it all."""
    data = await upload.read(max_bytes + 1)
    await upload.close()
    if len(data) > max_bytes:
        raise InvalidRequestError(f"Image exceeds the {max_bytes // (1024 * 1024)}MB limit")
    return ImageInput(
        data=data,
        mime_type=upload.content_type or "application/octet-stream",
        source="upload",
    )
