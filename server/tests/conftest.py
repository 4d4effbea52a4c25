# ─────────────────────────────────────────────────────────────────────────────
# Test Fixtures: shared across all tests
# ─────────────────────────────────────────────────────────────────────────────
# External services (world service, signed upload host, Gemini) are faked
# with one httpx.MockTransport handler. App state is wired manually through
# build_services (ASGITransport doesn't run lifespan).
# ─────────────────────────────────────────────────────────────────────────────

import asyncio
import base64
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from worldgen.config import Settings
from worldgen.main import build_services, create_app
from worldgen.rate_limit import limiter
from worldgen.schemas import Job
from worldgen.services.job_store import JobStore
from worldgen.services.ledger import InMemoryCreditLedger

WORLD_BASE = "https://world.test"
GEMINI_BASE = "https://gemini.test/v1beta"
UPLOAD_URL = "https://upload.test/signed/media_1"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

FULL_RES_URL = "https://cdn.test/worlds/world_1/full_res.spz"
LOW_RES_URL = "https://cdn.test/worlds/world_1/500k.spz"
COLLIDER_URL = "https://cdn.test/worlds/world_1/collider.glb"


def world_resource(**assets: Any) -> dict:
    """World resource with the default splat + collider assets."""
    default_assets = {
        "splats": {"spz_urls": {"full_res": FULL_RES_URL, "500k": LOW_RES_URL}},
        "meshes": {"collider_glb_url": COLLIDER_URL},
    }
    default_assets.update(assets)
    return {"world_id": "world_1", "display_name": "ancient rome", "assets": default_assets}


class FakeUpstream:
    """Scriptable stand-in for every external HTTP service.

    Attributes are flipped by tests to simulate failures; ``requests``
    records everything the server sent.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.polls_until_done = 1
        self.operation_error: Any = None
        self.omit_world_id = False
        self.world_responses: list[dict] = []
        self.world_status = 200
        self.generate_status = 200
        self.upload_status = 200
        self.image_status = 200
        self.image_returns_text_only = False
        self.image_body: dict | None = None
        self.content_status = 200
        self.polls = 0

    def count(self, path_fragment: str) -> int:
        return sum(1 for r in self.requests if path_fragment in r.url.path)

    def last(self, path_fragment: str) -> httpx.Request:
        return [r for r in self.requests if path_fragment in r.url.path][-1]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "upload.test":
            return httpx.Response(self.upload_status)

        if host == "world.test":
            return self._world(path)

        if host == "gemini.test":
            if "image-model" in path:
                return self._image()
            return self._content()

        return httpx.Response(404, json={"error": "unknown host"})

    def _world(self, path: str) -> httpx.Response:
        if path.endswith("media-assets:prepare_upload"):
            return httpx.Response(
                200,
                json={
                    "media_asset": {"id": "media_1"},
                    "upload_info": {
                        "upload_url": UPLOAD_URL,
                        "upload_method": "PUT",
                        "required_headers": {"x-goog-content-length-range": "0,10485760"},
                    },
                },
            )
        if path.endswith("worlds:generate"):
            if self.generate_status != 200:
                return httpx.Response(self.generate_status, text="generation rejected")
            return httpx.Response(200, json={"operation_id": "op_1", "done": False})
        if "/operations/" in path:
            self.polls += 1
            if self.polls < self.polls_until_done:
                return httpx.Response(
                    200, json={"done": False, "metadata": {"progress": {"status": "IN_PROGRESS"}}}
                )
            if self.operation_error is not None:
                return httpx.Response(200, json={"done": True, "error": self.operation_error})
            metadata = {} if self.omit_world_id else {"world_id": "world_1"}
            return httpx.Response(200, json={"done": True, "metadata": metadata})
        if "/worlds/" in path:
            if self.world_status != 200:
                return httpx.Response(self.world_status, text="world lookup failed")
            if self.world_responses:
                return httpx.Response(200, json=self.world_responses.pop(0))
            return httpx.Response(200, json=world_resource())
        return httpx.Response(404)

    def _image(self) -> httpx.Response:
        if self.image_status != 200:
            return httpx.Response(self.image_status, json={"error": {"message": "quota"}})
        if self.image_body is not None:
            return httpx.Response(200, json=self.image_body)
        parts: list[dict] = [{"text": "Here is your image."}]
        if not self.image_returns_text_only:
            parts.append(
                {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()}}
            )
        return httpx.Response(200, json={"candidates": [{"content": {"parts": parts}}]})

    def _content(self) -> httpx.Response:
        if self.content_status != 200:
            return httpx.Response(self.content_status)
        text = (
            "```json\n"
            '{"learningObjectives": ["Understand the Forum"],'
            ' "keyFacts": [{"text": "Rome was founded in 753 BC", "source": "Livy"}],'
            ' "narrationScript": "Welcome to Rome."}\n'
            "```"
        )
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


@pytest.fixture
def test_settings() -> Settings:
    """Settings with millisecond poll intervals and fake service endpoints."""
    return Settings(
        world_api_base=WORLD_BASE,
        world_api_key="test-world-key",
        world_poll_interval_seconds=0.01,
        world_poll_max_attempts=20,
        world_fetch_retries=3,
        world_fetch_delay_seconds=0.01,
        gemini_api_base=GEMINI_BASE,
        gemini_api_key="test-gemini-key",
        gemini_image_models=["image-model"],
        gemini_content_model="content-model",
        ledger_url="",
        dev_starting_credits=3,
        admin_api_key="admin-secret",
        privileged_user_ids=["vip-user"],
        rate_limit_max_requests=5,
        rate_limit_window_seconds=3600,
        enable_debug_routes=True,
        log_json=False,
        log_level="DEBUG",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger(starting_balance=3)


@pytest.fixture
async def app(test_settings: Settings, upstream: FakeUpstream, ledger: InMemoryCreditLedger):
    """FastAPI app with every service wired to the fake upstream."""
    application = create_app()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    build_services(application, test_settings, http_client, ledger=ledger)
    limiter.reset()
    yield application
    await application.state.pipeline_orchestrator.shutdown()
    await http_client.aclose()


@pytest.fixture
async def client(app) -> AsyncClient:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def wait_for_terminal(store: JobStore, job_id: str, timeout: float = 3.0) -> Job:
    """Poll the store until the job reaches complete/error/cancelled."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = store.require(job_id)
        if job.status.is_terminal:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} still {job.status.value} after {timeout}s")
        await asyncio.sleep(0.005)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
