# ─────────────────────────────────────────────────────────────────────────────
# World Generation Client: media upload → generate → poll → fetch assets
# ─────────────────────────────────────────────────────────────────────────────
# Protocol, each step fatal on failure:
#   1. prepare_upload   POST /marble/v1/media-assets:prepare_upload
#   2. upload_bytes     <method> signed upload URL with the required headers
#   3. submit           POST /marble/v1/worlds:generate → operation id
#   4. poll_operation   GET  /marble/v1/operations/{id} until done
#   5. fetch assets     GET  /marble/v1/worlds/{id}, retried until the asset
#                       fields are populated (they lag behind `done`)
#
# All waits take the job's cancellation event, so a cancel wakes the sleep
# immediately instead of after the poll interval. A request already in
# flight still completes first.
# ─────────────────────────────────────────────────────────────────────────────

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
import structlog

from worldgen.config import Settings
from worldgen.exceptions import (
    AssetsNotReadyError,
    ExternalServiceError,
    JobCancelledError,
    NoUsableAssetError,
    OperationFailedError,
    OperationTimeoutError,
)
from worldgen.pipeline.asset_paths import AssetExtractor, WorldAssets

logger = structlog.get_logger(__name__)

SERVICE = "world service"

OnPollAttempt = Callable[[int, int], Awaitable[None]]


@dataclass(frozen=True)
class UploadTarget:
    media_asset_id: str
    upload_url: str
    upload_method: str = "PUT"
    required_headers: dict[str, str] = field(default_factory=dict)


async def pause(seconds: float, cancel: asyncio.Event | None = None) -> None:
    """Sleep ``seconds``, raising JobCancelledError as soon as ``cancel`` is set."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    if cancel.is_set():
        raise JobCancelledError()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise JobCancelledError()


class WorldGenerationClient:
    """Async client for the world generation service."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        extractor: AssetExtractor | None = None,
    ) -> None:
        self._client = client
        self._base = settings.world_api_base.rstrip("/")
        self._api_key = settings.world_api_key.get_secret_value()
        self._poll_interval = settings.world_poll_interval_seconds
        self._poll_attempts = settings.world_poll_max_attempts
        self._fetch_retries = max(settings.world_fetch_retries, 1)
        self._fetch_delay = settings.world_fetch_delay_seconds
        self._extractor = extractor or AssetExtractor.from_paths(
            settings.world_primary_asset_paths,
            settings.world_collider_asset_paths,
            settings.world_low_res_asset_paths,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def poll_ceiling_seconds(self) -> float:
        return self._poll_interval * self._poll_attempts

    # ── 1 + 2: media upload ──────────────────────────────────────────────────

    async def prepare_upload(self, file_name: str, extension: str) -> UploadTarget:
        data = await self._request_json(
            "POST",
            f"{self._base}/marble/v1/media-assets:prepare_upload",
            step="prepare_upload",
            json={"file_name": file_name, "kind": "image", "extension": extension},
        )
        try:
            media_asset_id = data["media_asset"]["id"]
            upload_info = data["upload_info"]
            upload_url = upload_info["upload_url"]
        except (KeyError, TypeError) as e:
            raise ExternalServiceError(SERVICE, f"prepare_upload response missing {e}") from e
        return UploadTarget(
            media_asset_id=str(media_asset_id),
            upload_url=upload_url,
            upload_method=(upload_info.get("upload_method") or "PUT").upper(),
            required_headers=dict(upload_info.get("required_headers") or {}),
        )

    async def upload_bytes(self, target: UploadTarget, data: bytes, mime_type: str) -> None:
        # Signed URL: authorization is in the URL + required headers, not our key.
        headers = {**target.required_headers, "Content-Type": mime_type}
        try:
            response = await self._client.request(
                target.upload_method, target.upload_url, headers=headers, content=data
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE, f"upload request failed: {e}") from e
        if response.is_error:
            raise ExternalServiceError(
                SERVICE, f"upload returned {response.status_code} - {response.text[:300]}"
            )
        logger.info("media_uploaded", media_asset_id=target.media_asset_id, bytes=len(data))

    async def upload_image(self, file_name: str, data: bytes, mime_type: str) -> str:
        """Steps 1 + 2. Returns the media asset id."""
        extension = mime_type.rsplit("/", 1)[-1].lower() or "png"
        if extension == "jpg":
            extension = "jpeg"
        target = await self.prepare_upload(file_name, extension)
        await self.upload_bytes(target, data, mime_type)
        return target.media_asset_id

    # ── 3: submit ────────────────────────────────────────────────────────────

    async def submit_generation(
        self,
        display_name: str,
        text_prompt: str,
        *,
        media_asset_id: str | None = None,
        image_url: str | None = None,
    ) -> str:
        """Request world creation. Returns the operation id."""
        if media_asset_id:
            image_prompt: dict[str, Any] = {"source": "media_asset", "media_asset_id": media_asset_id}
        elif image_url:
            image_prompt = {"source": "uri", "uri": image_url}
        else:
            raise ValueError("media_asset_id or image_url is required")

        data = await self._request_json(
            "POST",
            f"{self._base}/marble/v1/worlds:generate",
            step="generate",
            json={
                "display_name": display_name,
                "world_prompt": {
                    "type": "image",
                    "image_prompt": image_prompt,
                    "text_prompt": text_prompt,
                },
            },
        )
        operation_id = data.get("operation_id")
        if not operation_id:
            raise ExternalServiceError(SERVICE, "generate response has no operation_id")
        logger.info("world_generation_submitted", operation_id=operation_id)
        return str(operation_id)

    # ── 4: poll ──────────────────────────────────────────────────────────────

    async def poll_operation(
        self,
        operation_id: str,
        cancel: asyncio.Event | None = None,
        on_attempt: OnPollAttempt | None = None,
    ) -> str:
        """Poll until the operation is done. Returns the produced world id."""
        url = f"{self._base}/marble/v1/operations/{operation_id}"

        for attempt in range(1, self._poll_attempts + 1):
            await pause(self._poll_interval, cancel)
            if on_attempt is not None:
                await on_attempt(attempt, self._poll_attempts)

            data = await self._request_json("GET", url, step="operation status")
            metadata = data.get("metadata") or {}
            logger.debug(
                "operation_polled",
                operation_id=operation_id,
                attempt=attempt,
                status=(metadata.get("progress") or {}).get("status", "pending"),
            )

            if not data.get("done"):
                continue
            if data.get("error"):
                raise OperationFailedError(operation_id, data["error"])

            world_id = metadata.get("world_id") or (data.get("response") or {}).get("world_id")
            if not world_id:
                raise ExternalServiceError(SERVICE, f"operation {operation_id} completed but no world_id found")
            logger.info("operation_done", operation_id=operation_id, world_id=world_id, attempts=attempt)
            return str(world_id)

        raise OperationTimeoutError(operation_id, self.poll_ceiling_seconds)

    # ── 5 + 6: fetch result with eventual-consistency retry ──────────────────

    async def fetch_world_assets(
        self, world_id: str, cancel: asyncio.Event | None = None
    ) -> WorldAssets:
        url = f"{self._base}/marble/v1/worlds/{world_id}"
        saw_assets = False

        for attempt in range(1, self._fetch_retries + 1):
            world = await self._request_json("GET", url, step="fetch world")
            assets = self._extractor.extract(world)
            if assets is not None:
                logger.info(
                    "world_assets_ready",
                    world_id=world_id,
                    attempt=attempt,
                    has_collider=assets.collider_mesh_url is not None,
                    has_low_res=assets.world_url_low_res is not None,
                )
                return assets

            saw_assets = saw_assets or bool(world.get("assets"))
            logger.info("world_assets_pending", world_id=world_id, attempt=attempt)
            if attempt < self._fetch_retries:
                await pause(self._fetch_delay, cancel)

        if saw_assets:
            raise NoUsableAssetError(world_id)
        raise AssetsNotReadyError(world_id, self._fetch_retries)

    # ── HTTP helper ──────────────────────────────────────────────────────────

    async def _request_json(self, method: str, url: str, *, step: str, **kwargs: Any) -> dict:
        try:
            response = await self._client.request(
                method, url, headers={"WLT-Api-Key": self._api_key}, **kwargs
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE, f"{step} request failed: {e}") from e

        if response.is_error:
            raise ExternalServiceError(
                SERVICE, f"{step} returned {response.status_code} - {response.text[:300]}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(SERVICE, f"{step} returned malformed JSON") from e
        if not isinstance(data, dict):
            raise ExternalServiceError(SERVICE, f"{step} returned {type(data).__name__}, expected object")
        return data
