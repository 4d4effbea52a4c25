# ─────────────────────────────────────────────────────────────────────────────
# Tests: World generation client (upload → submit → poll → fetch)
# ─────────────────────────────────────────────────────────────────────────────

import asyncio
import json

import httpx
import pytest
from pydantic import SecretStr

from conftest import COLLIDER_URL, FULL_RES_URL, LOW_RES_URL, PNG_BYTES, UPLOAD_URL, FakeUpstream, world_resource
from worldgen.config import Settings
from worldgen.exceptions import (
    AssetsNotReadyError,
    ExternalServiceError,
    JobCancelledError,
    NoUsableAssetError,
    OperationFailedError,
    OperationTimeoutError,
)
from worldgen.services.world_client import WorldGenerationClient, pause


@pytest.fixture
def world_client(test_settings: Settings, upstream: FakeUpstream) -> WorldGenerationClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    return WorldGenerationClient(client, test_settings)


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_uses_signed_url_and_required_headers(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        media_asset_id = await world_client.upload_image("ancient_rome.png", PNG_BYTES, "image/png")

        assert media_asset_id == "media_1"
        prepare = upstream.last("prepare_upload")
        assert prepare.headers["WLT-Api-Key"] == "test-world-key"
        assert json.loads(prepare.content) == {
            "file_name": "ancient_rome.png",
            "kind": "image",
            "extension": "png",
        }

        upload = upstream.requests[-1]
        assert str(upload.url) == UPLOAD_URL
        assert upload.method == "PUT"
        assert upload.headers["x-goog-content-length-range"] == "0,10485760"
        assert upload.headers["Content-Type"] == "image/png"
        assert "WLT-Api-Key" not in upload.headers
        assert upload.content == PNG_BYTES

    @pytest.mark.asyncio
    async def test_upload_failure_is_external_error(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        upstream.upload_status = 403
        with pytest.raises(ExternalServiceError, match="upload returned 403"):
            await world_client.upload_image("x.png", PNG_BYTES, "image/png")


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_with_media_asset(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        operation_id = await world_client.submit_generation("ancient rome", "prompt", media_asset_id="media_1")
        assert operation_id == "op_1"
        body = json.loads(upstream.last("worlds:generate").content)
        assert body["display_name"] == "ancient rome"
        assert body["world_prompt"]["type"] == "image"
        assert body["world_prompt"]["text_prompt"] == "prompt"
        assert body["world_prompt"]["image_prompt"] == {"source": "media_asset", "media_asset_id": "media_1"}

    @pytest.mark.asyncio
    async def test_submit_with_hosted_url(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        await world_client.submit_generation("rome", "prompt", image_url="https://img.test/rome.png")
        body = json.loads(upstream.last("worlds:generate").content)
        assert body["world_prompt"]["image_prompt"] == {"source": "uri", "uri": "https://img.test/rome.png"}

    @pytest.mark.asyncio
    async def test_submit_rejected(self, world_client: WorldGenerationClient, upstream: FakeUpstream) -> None:
        upstream.generate_status = 400
        with pytest.raises(ExternalServiceError, match="generate returned 400"):
            await world_client.submit_generation("rome", "prompt", media_asset_id="media_1")


class TestPoll:
    @pytest.mark.asyncio
    async def test_polls_until_done(self, world_client: WorldGenerationClient, upstream: FakeUpstream) -> None:
        upstream.polls_until_done = 3
        attempts: list[tuple[int, int]] = []

        async def on_attempt(attempt: int, max_attempts: int) -> None:
            attempts.append((attempt, max_attempts))

        world_id = await world_client.poll_operation("op_1", on_attempt=on_attempt)

        assert world_id == "world_1"
        assert upstream.polls == 3
        assert attempts == [(1, 20), (2, 20), (3, 20)]

    @pytest.mark.asyncio
    async def test_operation_error(self, world_client: WorldGenerationClient, upstream: FakeUpstream) -> None:
        upstream.operation_error = {"code": 13, "message": "content policy"}
        with pytest.raises(OperationFailedError, match="content policy"):
            await world_client.poll_operation("op_1")

    @pytest.mark.asyncio
    async def test_done_without_world_id(self, world_client: WorldGenerationClient, upstream: FakeUpstream) -> None:
        upstream.omit_world_id = True
        with pytest.raises(ExternalServiceError, match="no world_id"):
            await world_client.poll_operation("op_1")

    @pytest.mark.asyncio
    async def test_bounded_attempts(self, world_client: WorldGenerationClient, upstream: FakeUpstream) -> None:
        upstream.polls_until_done = 10_000
        with pytest.raises(OperationTimeoutError, match="Operation timeout"):
            await world_client.poll_operation("op_1")
        assert upstream.polls == 20

    @pytest.mark.asyncio
    async def test_cancel_wakes_poll_wait(self, test_settings: Settings, upstream: FakeUpstream) -> None:
        slow = test_settings.model_copy(update={"world_poll_interval_seconds": 30.0})
        client = WorldGenerationClient(httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)), slow)
        cancel = asyncio.Event()

        task = asyncio.create_task(client.poll_operation("op_1", cancel=cancel))
        await asyncio.sleep(0.01)
        cancel.set()

        with pytest.raises(JobCancelledError):
            await asyncio.wait_for(task, timeout=1.0)
        assert upstream.polls == 0


class TestFetchAssets:
    @pytest.mark.asyncio
    async def test_assets_extracted(self, world_client: WorldGenerationClient) -> None:
        assets = await world_client.fetch_world_assets("world_1")
        assert assets.world_url == FULL_RES_URL
        assert assets.world_url_low_res == LOW_RES_URL
        assert assets.collider_mesh_url == COLLIDER_URL

    @pytest.mark.asyncio
    async def test_retries_until_assets_populated(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        upstream.world_responses = [{"world_id": "world_1", "assets": {}}, {"world_id": "world_1"}]
        assets = await world_client.fetch_world_assets("world_1")
        assert assets.world_url == FULL_RES_URL
        assert upstream.count("/worlds/world_1") == 3

    @pytest.mark.asyncio
    async def test_assets_never_populated(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        upstream.world_responses = [{"world_id": "world_1", "assets": None}] * 3
        with pytest.raises(AssetsNotReadyError, match="Timeout waiting for assets"):
            await world_client.fetch_world_assets("world_1")

    @pytest.mark.asyncio
    async def test_assets_without_primary(
        self, world_client: WorldGenerationClient, upstream: FakeUpstream
    ) -> None:
        no_splats = world_resource(splats={"spz_urls": {}})
        upstream.world_responses = [no_splats] * 3
        with pytest.raises(NoUsableAssetError, match="no usable primary asset"):
            await world_client.fetch_world_assets("world_1")

    @pytest.mark.asyncio
    async def test_fetch_http_error(self, world_client: WorldGenerationClient, upstream: FakeUpstream) -> None:
        upstream.world_status = 500
        with pytest.raises(ExternalServiceError, match="fetch world returned 500"):
            await world_client.fetch_world_assets("world_1")


class TestPause:
    @pytest.mark.asyncio
    async def test_pause_without_cancel(self) -> None:
        await pause(0.001)

    @pytest.mark.asyncio
    async def test_pause_already_cancelled(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(JobCancelledError):
            await pause(10, cancel)


def test_unconfigured_without_key(test_settings: Settings) -> None:
    settings = test_settings.model_copy(update={"world_api_key": SecretStr("")})
    client = WorldGenerationClient(httpx.AsyncClient(), settings)
    assert client.configured is False
    assert client.poll_ceiling_seconds == pytest.approx(0.2)
