import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.middleware.logging_middleware import RequestContextMiddleware, RequestLoggingMiddleware
from app.routers import router as api_router
from app.service_container import Services
from app.utils.fastapi_utils import install_exception_handlers
from common.core.config_service import settings
from common.logging import setup_logging
from common.utils.utils import get_logger
from ledger_db.db.init_db import init_db

# Load environment variables BEFORE setting up logging
# This ensures LOG_JSON_FORMAT and other logging config is available
env = os.getenv("APP_ENV", "local")
base_dir = Path(__file__).resolve().parent.parent.parent / "libs" / "common"
env_file = base_dir / (".env.local" if env == "local" else f".env.{env}")
if env_file.exists():
    _ = load_dotenv(env_file)

setup_logging()

logger = get_logger()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, Any]:
    services = Services.instance()

    logger.info("Starting application database setup")
    success = await init_db(services.db, services.config_service.get_database_url())
    if success:
        logger.info("Database setup completed successfully", service="database", status="initialized")
    else:
        logger.error("Database setup failed", service="database", status="failed")
        raise RuntimeError("Failed to initialize database")

    # Starts the DB handle and, when enabled, the expiry worker
    await services.start()

    yield

    logger.info("Application shutting down")
    await services.stop()


def create_app(use_lifespan: bool = True) -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="Credit ledger, balances and Stripe payment reconciliation",
        version="1.0.0",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if use_lifespan else None,
    )

    # Added last runs first: the context must exist before requests are logged
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestContextMiddleware)

    install_exception_handlers(application)
    application.include_router(api_router)

    @application.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from common.core.config_service import ConfigService

    config_service = ConfigService()

    host = config_service.get("host", "0.0.0.0")
    port = int(config_service.get("port", 8000))

    logger.info("Starting application server", host=host, port=port, environment=config_service.get_environment())

    uvicorn.run(app, host=host, port=port)
