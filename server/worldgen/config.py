# ─────────────────────────────────────────────────────────────────────────────
# Settings: Pydantic v2 BaseSettings
# ─────────────────────────────────────────────────────────────────────────────


from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server configuration sourced from environment variables.

    Uses pydantic-settings v2 (separate package from pydantic).
    """

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    port: int = 3001

    # ── World generation service ─────────────────────────────────────────────
    world_api_base: str = "https://api.worldlabs.ai"
    world_api_key: SecretStr = SecretStr("")
    world_poll_interval_seconds: float = 5.0
    world_poll_max_attempts: int = 120  # 120 × 5s = 10 minute ceiling
    world_fetch_retries: int = 5
    world_fetch_delay_seconds: float = 3.0
    world_request_timeout_seconds: float = 60.0

    # Dotted paths tried in order when reading assets off a world resource.
    # Empty means "use the built-in lists" in pipeline/asset_paths.py.
    world_primary_asset_paths: list[str] = []
    world_collider_asset_paths: list[str] = []
    world_low_res_asset_paths: list[str] = []

    # ── Image + content services (Gemini REST) ───────────────────────────────
    gemini_api_key: SecretStr = SecretStr("")
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_image_models: list[str] = [
        "gemini-2.0-flash-exp-image-generation",
        "gemini-3-pro-image-preview",
    ]
    gemini_content_model: str = "gemini-2.0-flash-exp"
    content_cache_size: int = 256
    # Publicly reachable placeholder used when image synthesis fails.
    # Empty → a job with no uploaded image fails instead.
    fallback_image_url: str = ""

    # ── Credit ledger ────────────────────────────────────────────────────────
    ledger_url: str = ""  # empty → in-memory ledger (local dev only)
    ledger_api_key: SecretStr = SecretStr("")
    credit_cost: int = 1
    dev_starting_credits: int = 3
    refund_on_cancel: bool = False

    # ── Identity ─────────────────────────────────────────────────────────────
    admin_api_key: SecretStr = SecretStr("")
    privileged_user_ids: list[str] = []

    # ── Limits ───────────────────────────────────────────────────────────────
    rate_limit_max_requests: int = 5
    rate_limit_window_seconds: float = 3600.0
    http_rate_limit: str = "120/minute"
    max_concept_length: int = 500
    max_image_bytes: int = 10 * 1024 * 1024
    job_ttl_seconds: float = 0.0  # 0 disables eviction

    # ── Feature flags ────────────────────────────────────────────────────────
    enable_debug_routes: bool = True

    # ── HTTP ─────────────────────────────────────────────────────────────────
    allowed_origins: str = ""

    # ── Logging ──────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True  # JSON logs for Cloud Logging


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
