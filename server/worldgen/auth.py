# ─────────────────────────────────────────────────────────────────────────────
# Caller Identity: who is starting this job, and are they privileged?
# ─────────────────────────────────────────────────────────────────────────────
# Two ways in:
#   - X-API-Key matching ADMIN_API_KEY → privileged service caller
#     (no rate limit, no credit debit).
#   - X-User-Id set by the upstream gateway after it verified the user's
#     token. Privileged if listed in PRIVILEGED_USER_IDS.
#
# Token verification itself happens upstream; this service trusts the
# gateway-supplied header.
#
# Uses secrets.compare_digest for the admin key (constant-time comparison).
# ─────────────────────────────────────────────────────────────────────────────

import secrets
from dataclasses import dataclass

import structlog
from fastapi import Request

from worldgen.exceptions import UnauthenticatedError

logger = structlog.get_logger(__name__)

PRIVILEGED_OWNER = "privileged"


@dataclass(frozen=True)
class Identity:
    user_id: str
    privileged: bool = False


def resolve_identity(request: Request) -> Identity:
    """FastAPI dependency: map request headers to an Identity or raise 401."""
    settings = request.app.state.settings

    provided_key = request.headers.get("x-api-key", "")
    admin_key = settings.admin_api_key.get_secret_value()
    if provided_key and admin_key:
        if secrets.compare_digest(provided_key, admin_key):
            return Identity(user_id=PRIVILEGED_OWNER, privileged=True)
        logger.warning("auth_rejected", path=request.url.path, reason="invalid_api_key")
        raise UnauthenticatedError()

    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        logger.warning("auth_rejected", path=request.url.path, reason="missing_identity")
        raise UnauthenticatedError()

    return Identity(user_id=user_id, privileged=user_id in settings.privileged_user_ids)
