# ─────────────────────────────────────────────────────────────────────────────
# HTTP Rate Limiter: slowapi, per client IP
# ─────────────────────────────────────────────────────────────────────────────
# Outer flood guard on the HTTP surface only. The per-identity generation
# quota (N starts per window) lives in services/rate_limiter.py and is
# enforced by the controller, where the identity is known.
# ─────────────────────────────────────────────────────────────────────────────

from slowapi import Limiter
from slowapi.util import get_remote_address

from worldgen.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def http_rate_limit() -> str:
    """Limit string for decorated routes, read from settings at request time."""
    return get_settings().http_rate_limit
