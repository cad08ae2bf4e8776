"""
Application Factory Pattern

Creates FastAPI app instances with configurable settings for different environments.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from reviewflow.core.config import get_settings
from reviewflow.core.encryption import EncryptionError, get_encryption, validate_encryption
from reviewflow.core.errors import ReviewFlowError
from reviewflow.core.logging import setup_logging

logger = logging.getLogger(__name__)


class AppConfig:
    """Configuration for FastAPI application."""

    def __init__(
        self,
        environment: str = None,
        title: str = None,
        version: str = None,
        enable_docs: bool = None,
        configure_logging: bool = True,
        create_schema: bool = None,
    ):
        settings = get_settings()
        self.environment = (environment or settings.environment).lower()
        self.title = title or settings.app_name
        self.version = version or settings.app_version

        self.enable_docs = enable_docs if enable_docs is not None else (self.environment != "production")
        self.docs_url = "/docs" if self.enable_docs else None

        self.configure_logging = configure_logging
        # Production schema changes go through migrations
        self.create_schema = create_schema if create_schema is not None else (self.environment == "development")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def setup_encryption(config: AppConfig) -> None:
    """Load key material and run the round-trip self test; fatal in production"""
    try:
        encryption = get_encryption()
        healthy = validate_encryption(encryption)
    except EncryptionError as e:
        logger.error(f"Credential encryption unavailable: {e}")
        healthy = False

    if healthy:
        logger.info("Credential encryption self test passed")
        return
    if config.is_production:
        raise RuntimeError("Credential encryption is not usable; refusing to start")
    logger.warning("Credential encryption is not usable; credential endpoints will fail")


def setup_routers(app: FastAPI) -> None:
    from reviewflow.api.credentials import router as credentials_router
    from reviewflow.api.plans import router as plans_router
    from reviewflow.api.reviews import router as reviews_router

    app.include_router(reviews_router)
    app.include_router(credentials_router)
    app.include_router(plans_router)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup custom exception handlers."""

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "validation",
                "message": "Invalid request",
                "retryable": False,
                "fields": [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()],
            },
        )

    @app.exception_handler(ReviewFlowError)
    async def service_error_handler(request: Request, exc: ReviewFlowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def setup_health_endpoints(app: FastAPI, config: AppConfig) -> None:

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "environment": config.environment, "version": config.version}


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """
    Create FastAPI application with factory pattern.

    Args:
        config: Optional configuration object

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = AppConfig()

    if config.configure_logging:
        setup_logging()

    logger.info(f"Creating FastAPI application ({config.environment})")

    setup_encryption(config)

    if config.create_schema:
        from reviewflow.db.database import create_tables
        create_tables()

    app = FastAPI(
        title=config.title,
        version=config.version,
        docs_url=config.docs_url,
        redoc_url=None,
    )

    setup_routers(app)
    setup_exception_handlers(app)
    setup_health_endpoints(app, config)

    logger.info(f"FastAPI application created with {len(app.routes)} routes")
    return app
