# ─────────────────────────────────────────────────────────────────────────────
# Image Client: Gemini REST image synthesis for the world's source image
# ─────────────────────────────────────────────────────────────────────────────
# Tries each configured model in order and returns the first inline image.
# Every failure mode (HTTP error, no candidates, text-only answer) becomes
# ExternalServiceError; whether that is fatal is the pipeline's decision.
# ─────────────────────────────────────────────────────────────────────────────

import base64
import binascii
from dataclasses import dataclass

import httpx
import structlog

from worldgen.config import Settings
from worldgen.exceptions import ExternalServiceError

logger = structlog.get_logger(__name__)

SERVICE = "image service"


@dataclass(frozen=True)
class ImageInput:
    """Raw image bytes plus MIME type, from the caller or from synthesis."""

    data: bytes
    mime_type: str = "image/png"
    source: str = "upload"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class ImageClient:
    """Generate one image from a text prompt."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self._client = client
        self._base = settings.gemini_api_base.rstrip("/")
        self._api_key = settings.gemini_api_key.get_secret_value()
        self._models = list(settings.gemini_image_models)

    @property
    def configured(self) -> bool:
        return bool(self._api_key) and bool(self._models)

    async def generate(self, prompt: str) -> ImageInput:
        if not self.configured:
            raise ExternalServiceError(SERVICE, "no API key configured")

        last_error = "no models configured"
        for model in self._models:
            try:
                image = await self._generate_with(model, prompt)
            except ExternalServiceError as e:
                last_error = e.message
                logger.warning("image_model_failed", model=model, error=e.message)
                continue
            logger.info("image_generated", model=model, bytes=len(image.data), mime=image.mime_type)
            return image

        raise ExternalServiceError(SERVICE, f"all models failed, last error: {last_error}")

    async def _generate_with(self, model: str, prompt: str) -> ImageInput:
        url = f"{self._base}/models/{model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        try:
            response = await self._client.post(url, params={"key": self._api_key}, json=body)
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE, f"{model} request failed: {e}") from e
        if response.is_error:
            raise ExternalServiceError(SERVICE, f"{model} returned {response.status_code}")

        try:
            parts = response.json()["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError(SERVICE, f"{model} returned no candidates") from e

        if not isinstance(parts, list):
            raise ExternalServiceError(SERVICE, f"{model} returned malformed parts")

        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and inline.get("data"):
                try:
                    data = base64.b64decode(inline["data"], validate=True)
                except (binascii.Error, ValueError, TypeError) as e:
                    raise ExternalServiceError(SERVICE, f"{model} returned undecodable image") from e
                mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return ImageInput(data=data, mime_type=mime, source=model)

        raise ExternalServiceError(SERVICE, f"{model} returned no image")
