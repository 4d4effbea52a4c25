# ─────────────────────────────────────────────────────────────────────────────
# Content Client: educational overlay for a concept (orchestrating stage)
# ─────────────────────────────────────────────────────────────────────────────
# Cosmetic, not on the asset critical path. Raises ExternalServiceError on
# any failure; the pipeline swaps in EMPTY_CONTENT and carries on.
# ─────────────────────────────────────────────────────────────────────────────

import json
import re
from typing import Any

import httpx
import structlog

from worldgen.cache.content_cache import ContentCache
from worldgen.config import Settings
from worldgen.exceptions import ExternalServiceError
from worldgen.pipeline.prompt_templates import get_content_prompt

logger = structlog.get_logger(__name__)

SERVICE = "content service"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

EMPTY_CONTENT: dict[str, Any] = {
    "learningObjectives": [],
    "keyFacts": [],
    "callouts": [],
    "narrationScript": "",
    "sources": [],
}


def empty_content(concept: str) -> dict[str, Any]:
    return {"concept": concept, **EMPTY_CONTENT, "placeholder": True}


class ContentClient:
    def __init__(self, client: httpx.AsyncClient, settings: Settings, cache: ContentCache) -> None:
        self._client = client
        self._cache = cache
        self._base = settings.gemini_api_base.rstrip("/")
        self._api_key = settings.gemini_api_key.get_secret_value()
        self._model = settings.gemini_content_model

    @property
    def cache(self) -> ContentCache:
        return self._cache

    async def shape(self, concept: str) -> dict[str, Any]:
        """Return the content dict for ``concept``, from cache when possible."""
        cached = self._cache.get(concept)
        if cached is not None:
            return cached
        if not self._api_key:
            raise ExternalServiceError(SERVICE, "no API key configured")

        url = f"{self._base}/models/{self._model}:generateContent"
        body = {"contents": [{"parts": [{"text": get_content_prompt(concept)}]}]}
        try:
            response = await self._client.post(url, params={"key": self._api_key}, json=body)
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE, f"request failed: {e}") from e
        if response.is_error:
            raise ExternalServiceError(SERVICE, f"returned {response.status_code}")

        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError(SERVICE, "response has no text candidate") from e

        content = _parse_content(text)
        content["concept"] = concept
        self._cache.set(concept, content)
        logger.info("content_shaped", concept=concept, facts=len(content.get("keyFacts", [])))
        return content


def _parse_content(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a model answer (often wrapped in prose/fences)."""
    match = _JSON_OBJECT.search(text)
    if match is None:
        raise ExternalServiceError(SERVICE, "no JSON found in response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ExternalServiceError(SERVICE, f"malformed JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise ExternalServiceError(SERVICE, "JSON answer is not an object")
    return {**EMPTY_CONTENT, **parsed}
