from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "MedTriage API"
    api_prefix: str = "/api"
    cors_origins: List[str] = ["*"]  # For demo only; restrict in production.
    environment: str = "production"
    log_level: str = "INFO"

    # Which adapter classifies uploads: "primary", "alternate" or "demo".
    classifier_backend: str = "primary"
    model_dir: str = "trained_models"
    artifact_base_url: str = "http://localhost:8000/models"
    # Alternate backend only: "substitute" swaps in a flagged mock model, "fail" raises.
    mock_substitution: str = "substitute"
    max_image_bytes: int = 10 * 1024 * 1024
    classification_timeout_seconds: float = 60.0
    record_update_wait_seconds: float = 45.0

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    enrichment_attempts: int = 3
    enrichment_base_delay: float = 2.0
    enrichment_attempt_timeout: float = 30.0

    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"

    blob_dir: str = "uploads"
    blob_public_url: str = "http://localhost:8000/uploads"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    class Config:
        env_file = ".env"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
