# ─────────────────────────────────────────────────────────────────────────────
# Content Cache: in-memory LRU of educational content per concept
# ─────────────────────────────────────────────────────────────────────────────
# Uses cachetools.LRUCache for proper LRU semantics. "Ancient Rome" and
# "the ancient rome!" share an entry: keys are normalized before hashing.
# Memory only; content is cheap to regenerate and not on the critical path.
# ─────────────────────────────────────────────────────────────────────────────


import copy
import hashlib
import re
from typing import Any

import structlog
from cachetools import LRUCache

logger = structlog.get_logger(__name__)

# ── Stop words stripped during key normalization ─────────────────────────────
_ARTICLES = frozenset({"a", "an", "the"})


class ContentCache:
    """LRU cache of concept → content dict, with hit/miss counters."""

    def __init__(self, capacity: int = 256):
        self._memory: LRUCache = LRUCache(maxsize=max(capacity, 1))
        self._hits = 0
        self._misses = 0

    # ── Key normalization ────────────────────────────────────────────────────

    @staticmethod
    def normalize_key(text: str) -> str:
        """Normalize input text to a canonical form.

        Strips punctuation, lowercases, removes articles.
        """
        text = text.lower().strip()
        text = re.sub(r"[^\w\s]", "", text)
        words = [w for w in text.split() if w not in _ARTICLES]
        return " ".join(words) if words else text

    @staticmethod
    def _hash_key(normalized: str) -> str:
        """SHA-256 hash of normalized text, first 16 hex chars."""
        return hashlib.sha256(normalized.encode()).hexdigest()[:16]

    def _key(self, concept: str) -> str:
        return self._hash_key(self.normalize_key(concept))

    # ── Get / set ────────────────────────────────────────────────────────────

    def get(self, concept: str) -> dict[str, Any] | None:
        key = self._key(concept)
        content = self._memory.get(key)
        if content is None:
            self._misses += 1
            logger.debug("content_cache_miss", concept=concept, key=key)
            return None
        self._hits += 1
        logger.debug("content_cache_hit", concept=concept, key=key)
        return copy.deepcopy(content)

    def set(self, concept: str, content: dict[str, Any]) -> None:
        self._memory[self._key(concept)] = copy.deepcopy(content)

    def clear(self) -> None:
        self._memory.clear()

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._memory),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0,
        }
