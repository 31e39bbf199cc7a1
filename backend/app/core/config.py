"""
Application configuration settings.

Responsibilities:
- Load environment variables (and a local .env file when present)
- Define credentials for the record store, blob store and inference service
- Define retention, upload limits and preprocessing bounds
"""

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Settings:
    PROJECT_NAME: str = "Photo3D"
    API_V1_STR: str = "/api/v1"

    def __init__(self):
        # Record store / blob store
        self.SUPABASE_URL: Optional[str] = os.getenv("SUPABASE_URL")
        self.SUPABASE_SERVICE_ROLE_KEY: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        self.SUPABASE_ANON_KEY: Optional[str] = os.getenv("SUPABASE_ANON_KEY")
        self.UPLOADS_BUCKET: str = os.getenv("UPLOADS_BUCKET", "uploads")
        self.MODELS_BUCKET: str = os.getenv("MODELS_BUCKET", "models")

        # Inference service
        self.REPLICATE_API_TOKEN: Optional[str] = os.getenv("REPLICATE_API_TOKEN")
        self.REPLICATE_API_URL: str = os.getenv("REPLICATE_API_URL", "https://api.replicate.com/v1")
        self.REPLICATE_MODEL_VERSION: str = os.getenv(
            "REPLICATE_MODEL_VERSION",
            "a4d7a5ab3ef8c8ff72c91d39600ae14e7c4d28ae6bc9a3ea36a1ec6e345fea0f",
        )
        self.INFERENCE_TIMEOUT: int = _get_int("INFERENCE_TIMEOUT", 60)
        self.INFERENCE_MODE: str = os.getenv("INFERENCE_MODE", "sync")

        # Expiry sweeper
        self.CLEANUP_SECRET: Optional[str] = os.getenv("CLEANUP_SECRET") or os.getenv("CRON_SECRET")
        self.ALLOW_INSECURE_CLEANUP: bool = _get_bool("ALLOW_INSECURE_CLEANUP", False)
        self.RETENTION_DAYS: int = _get_int("RETENTION_DAYS", 60)

        # Upload limits and preprocessing
        self.MAX_UPLOAD_BYTES: int = _get_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)
        self.PREPROCESS_ENABLED: bool = _get_bool("PREPROCESS_ENABLED", True)
        self.PREPROCESS_MAX_WIDTH: int = _get_int("PREPROCESS_MAX_WIDTH", 512)
        self.PREPROCESS_MAX_HEIGHT: int = _get_int("PREPROCESS_MAX_HEIGHT", 512)
        self.PREPROCESS_QUALITY: int = _get_int("PREPROCESS_QUALITY", 80)

        # Server
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FILE: Optional[str] = os.getenv("LOG_FILE")
        self.CORS_ORIGINS: List[str] = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]


settings = Settings()
