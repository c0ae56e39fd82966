"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ensmarket.api.routes import internal, webhooks
from ensmarket.core.config import Settings, configure_logging
from ensmarket.core.database import get_engine, setup_db_session
from ensmarket.services.container import build_container
from ensmarket.services.exceptions import PayloadValidationError, ServiceError
from ensmarket.workers.scheduler import build_scheduler

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: configure logging, set up the database session factory, wire services,
      start the batch job scheduler
    - Shutdown: stop the scheduler, dispose the connection pool
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    container = build_container(settings, session_factory=session_factory)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = container.uow_factory
    app.state.container = container

    if container.chain_client is None:
        logger.warning("startup.tx_watcher_disabled", reason="CHAIN_RPC_URL not set")

    scheduler = build_scheduler(container)
    scheduler.start()
    app.state.scheduler = scheduler

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    await scheduler.stop()
    await get_engine(session_factory).dispose()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request.failed",
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = PayloadValidationError(
        "Invalid request body",
        code="REQUEST_INVALID",
        details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
    )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="ENS Marketplace Backend API",
        description="ENS purchase intent lifecycle and reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)  # type: ignore[arg-type]

    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(internal.router, prefix="/api/internal", tags=["internal"])

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
