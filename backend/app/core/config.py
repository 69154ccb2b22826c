"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    delivery_db_path: str = "./data/delivery_state.db"
    blob_dir: str = "./data/delivery_proofs"
    blob_signing_secret: str = "change-me"
    signed_url_ttl_seconds: int = 3600
    public_base_url: str = "http://localhost:8000"

    # Auth
    auth_enabled: bool = False
    # `token:actor_id:role` comma-separated
    actor_tokens: str = ""

    # Delivery confirmation policy
    max_distance_miles: float = 0.5
    confirmation_timeout_hours: float = 1.0
    receiver_link_ttl_days: int = 30
    confirmation_code_length: int = 8
    code_generation_attempts: int = 5

    # External capabilities
    location_timeout_seconds: float = 10.0
    upload_timeout_seconds: float = 30.0
    telematics_location_url: str = ""
    telematics_api_token: str = ""

    # Background escalation
    escalation_sweep_enabled: bool = True
    escalation_sweep_interval_seconds: float = 60.0

    def telematics_enabled(self) -> bool:
        return bool((self.telematics_location_url or "").strip())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
