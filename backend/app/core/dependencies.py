"""
Composition root.

Clients and services are built once at startup and shared through
`app.state.services`; routes receive them with FastAPI `Depends`.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from app.core.config import Settings
from app.core.database import DatabaseManager
from app.core.errors import AuthError
from app.core.logger import logger
from app.core.storage import StorageManager
from app.core.supabase_client import create_public_client, create_server_client
from app.services.expiry_sweeper import ExpirySweeper
from app.services.image_preprocessor import ImagePreprocessor
from app.services.inference_gateway import InferenceGateway, ReplicateGateway
from app.services.pipeline_manager import PipelineManager


@dataclass
class Services:
    settings: Settings
    storage: StorageManager
    database: DatabaseManager
    public_database: DatabaseManager
    gateway: InferenceGateway
    pipeline: PipelineManager
    sweeper: ExpirySweeper


def build_services(settings: Settings) -> Services:
    """
    Wire every collaborator from settings.

    Raises:
        AuthError: If the record-store credentials are missing
    """
    server_client = create_server_client(settings)

    storage = StorageManager(
        server_client,
        settings.SUPABASE_URL,
        uploads_bucket=settings.UPLOADS_BUCKET,
        models_bucket=settings.MODELS_BUCKET,
    )
    database = DatabaseManager(server_client)

    if settings.SUPABASE_ANON_KEY:
        public_database = DatabaseManager(create_public_client(settings))
    else:
        logger.warning("SUPABASE_ANON_KEY not set; read endpoints use the server client")
        public_database = database

    gateway = ReplicateGateway(
        api_token=settings.REPLICATE_API_TOKEN,
        model_version=settings.REPLICATE_MODEL_VERSION,
        api_url=settings.REPLICATE_API_URL,
        mode=settings.INFERENCE_MODE,
        wait_seconds=settings.INFERENCE_TIMEOUT,
    )
    if not gateway.check_credentials():
        logger.error("REPLICATE_API_TOKEN is not set; generation requests will fail")

    preprocessor = ImagePreprocessor(
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        max_width=settings.PREPROCESS_MAX_WIDTH,
        max_height=settings.PREPROCESS_MAX_HEIGHT,
        quality=settings.PREPROCESS_QUALITY,
    )
    pipeline = PipelineManager(
        storage,
        database,
        gateway,
        preprocessor=preprocessor,
        preprocess_enabled=settings.PREPROCESS_ENABLED,
        retention_days=settings.RETENTION_DAYS,
    )
    sweeper = ExpirySweeper(storage, database)

    return Services(
        settings=settings,
        storage=storage,
        database=database,
        public_database=public_database,
        gateway=gateway,
        pipeline=pipeline,
        sweeper=sweeper,
    )


def get_services(request: Request) -> Services:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        startup_error = getattr(request.app.state, "startup_error", None)
        raise AuthError(str(startup_error) if startup_error else "Missing service configuration")
    return services


def get_pipeline(request: Request) -> PipelineManager:
    return get_services(request).pipeline


def get_sweeper(request: Request) -> ExpirySweeper:
    return get_services(request).sweeper


def get_public_database(request: Request) -> DatabaseManager:
    return get_services(request).public_database


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
