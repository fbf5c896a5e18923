"""
Application Factory Pattern

Creates FastAPI app instances for the partner messaging service. Service
construction happens at startup so missing secrets stop the process before
any request is served.
"""
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from partner_messaging.core.config import Settings, get_settings
from partner_messaging.core.exceptions import PartnerMessagingError
from partner_messaging.core.logging import setup_logging
from partner_messaging.core.service_factory import get_factory, set_factory

logger = logging.getLogger(__name__)


class AppConfig:
    """Configuration for FastAPI application."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        title: str = "Partner Messaging Service",
        description: str = "WhatsApp Business partner provisioning and template messaging",
        version: str = "1.0.0",
        enable_docs: Optional[bool] = None,
        configure_logging: bool = True
    ):
        self.settings = settings or get_settings()
        self.environment = self.settings.environment.lower()
        self.title = title
        self.description = description
        self.version = version
        self.debug = self.environment == "development"
        self.enable_docs = enable_docs if enable_docs is not None else (self.environment != "production")
        self.docs_url = "/docs" if self.enable_docs else None
        self.configure_logging = configure_logging


def setup_routers(app: FastAPI) -> List[str]:
    """Setup API routers."""
    from partner_messaging.api._registry import ROUTERS

    loaded = []
    for router in ROUTERS:
        app.include_router(router)
        loaded.append(router.prefix)
        logger.info("Router '{}' loaded".format(router.prefix))
    return loaded


def setup_exception_handlers(app: FastAPI) -> None:
    """Render the error taxonomy as a generic message plus a machine-readable code."""

    @app.exception_handler(PartnerMessagingError)
    async def partner_error_handler(request: Request, exc: PartnerMessagingError):
        logger.warning(
            "{} {} -> {}: {}".format(request.method, request.url.path, exc.code, exc.message),
            extra={k: v for k, v in exc.context.items() if k in ("agent_id", "app_id", "operation", "campaign_id")}
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.to_dict()}
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled error on {} {}: {}".format(request.method, request.url.path, type(exc).__name__),
            exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": {"code": "internal_error", "message": "An internal error occurred"}}
        )


def setup_health_endpoints(app: FastAPI, config: AppConfig, loaded_routers: List[str]) -> None:
    """Setup health check endpoints."""

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": config.version,
            "environment": config.environment,
            "python_version": "{}.{}.{}".format(
                sys.version_info.major, sys.version_info.minor, sys.version_info.micro
            ),
            "routers": loaded_routers
        }


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
        setup_logging(
            level=config.settings.log_level,
            format_type=config.settings.log_format,
            service_name="partner-messaging"
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Raises ConfigurationError when secrets are missing
        factory = get_factory()
        if not factory.vault.self_test():
            raise RuntimeError("Credential vault self-test failed")
        logger.info("Partner messaging services initialised")
        yield
        await factory.close()
        set_factory(None)

    app = FastAPI(
        title=config.title,
        description=config.description,
        version=config.version,
        docs_url=config.docs_url,
        redoc_url=None,
        debug=config.debug,
        lifespan=lifespan
    )

    loaded_routers = setup_routers(app)
    setup_exception_handlers(app)
    setup_health_endpoints(app, config, loaded_routers)

    logger.info("FastAPI application created ({} environment, {} routes)".format(
        config.environment, len(app.routes)
    ))
    return app


def create_test_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create app configured for testing."""
    return create_app(AppConfig(settings=settings, enable_docs=False, configure_logging=False))
