from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Frontend URL for CORS
    frontend_url: str = "http://localhost:5173"

    # Gemini: API key (AI Studio) or Vertex AI project. Key wins when both are set.
    gemini_api_key: str = ""
    vertex_project_id: str = ""
    vertex_location: str = "us-central1"
    vertex_credentials_path: str = ""  # path to service account JSON; empty = use ADC

    # Models per call kind
    gemini_model: str = "gemini-3-flash-preview"  # structured JSON, vision, search grounding
    gemini_maps_model: str = "gemini-2.5-flash"  # Maps grounding
    gemini_reasoning_model: str = "gemini-3-pro-preview"  # mental health, bot commands
    gemini_image_model: str = "gemini-2.5-flash-image"  # illustrative location view

    # Retry on 429 / RESOURCE_EXHAUSTED
    ai_retry_max_attempts: int = 3
    ai_retry_initial_delay_ms: int = 1000
    ai_retry_jitter: float = 0.0  # fraction of the delay, 0 = deterministic

    # Cache: "memory" | "redis" | "sql" | "none"
    cache_backend: str = "memory"
    redis_url: str = ""  # e.g. redis://localhost:6379/0
    database_url: str = "sqlite:///./healthlens.db"

    # Cache TTLs (minutes)
    location_cache_ttl_minutes: int = 30
    facilities_cache_ttl_minutes: int = 60
    geocode_cache_ttl_minutes: int = 60
    city_snapshot_cache_ttl_minutes: int = 60
    forecast_cache_ttl_minutes: int = 30
    alerts_cache_ttl_minutes: int = 15

    # Uploads
    max_image_bytes: int = 10 * 1024 * 1024

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
