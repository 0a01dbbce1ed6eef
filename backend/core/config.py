"""
Inventory Delta Engine Configuration

Uses pydantic-settings for type-safe environment variable loading.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

LOCAL_ENVS = {"", "local", "dev", "development", "test"}

# Find .env file: check CWD first, then parent (project root)
_env_file = Path(".env")
if not _env_file.exists():
    _parent_env = Path(__file__).resolve().parent.parent.parent / ".env"
    if _parent_env.exists():
        _env_file = _parent_env


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Inventory Delta Engine"
    app_version: str = "1.0.0"
    app_env: str = "local"
    debug: bool = False

    # Orchestrator v1 API
    orchestrator_base_url: str = "http://localhost:8082/api"
    orchestrator_api_key: str = ""

    # Timeouts (seconds)
    request_timeout_seconds: float = 10.0
    review_timeout_seconds: float = 30.0

    # Lifecycle polling
    poll_interval_seconds: float = 15.0
    run_list_poll_interval_seconds: float = 30.0
    poll_backoff_max_seconds: float = 120.0
    poll_max_transient_failures: int = 3

    # Transport retries for idempotent GETs
    transient_retry_attempts: int = 3
    transient_retry_wait_max_seconds: float = 4.0

    # Active container selection (empty = in-memory only)
    selection_state_path: str = ""

    model_config = {
        "env_file": str(_env_file),
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    settings = Settings()
    _enforce_security_guardrails(settings)
    return settings


def _enforce_security_guardrails(settings: Settings) -> None:
    env = settings.app_env.strip().lower()
    if env in LOCAL_ENVS:
        return

    if settings.debug:
        raise ValueError("Refusing to start with debug=true outside local/dev/test")
    if not settings.orchestrator_api_key.strip():
        raise ValueError("Refusing to start without an orchestrator API key outside local/dev/test")
    if not settings.orchestrator_base_url.lower().startswith("https://"):
        raise ValueError("Refusing to talk to the orchestrator over plain HTTP outside local/dev/test")
