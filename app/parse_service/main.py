"""
FastAPI application for the PDF parse service.

Provides endpoints for:
- Synchronous and asynchronous document parsing
- Document job status and cancellation
- Batch submission and status
- Webhook delivery inspection
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings, get_settings
from .database import create_db_engine, create_session_factory, init_db
from .errors import ErrorCode, ServiceError
from .models import HealthResponse
from .routers import batches, documents, parse, webhooks
from .services.ai import AIService
from .services.batches import BatchCoordinator
from .services.engine import DocumentExtractionEngine, ExtractionEngine
from .services.fetcher import SourceFetcher
from .services.pdf_service import PDFService
from .services.rate_limiter import FixedWindowRateLimiter
from .services.scheduler import ParseJobScheduler
from .services.store import DeliveryStore, JobStore
from .services.webhooks import WebhookDispatcher

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    extraction_engine: ExtractionEngine | None = None,
    fetch_transport: httpx.AsyncBaseTransport | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the application.

    Services are created in the lifespan handler and stored on app.state.

    Args:
        settings: Configuration; defaults to the environment.
        extraction_engine: Engine to run documents through; defaults to the
            pdfplumber + OpenAI engine.
        fetch_transport: httpx transport for downloading URL sources.
        webhook_transport: httpx transport for webhook delivery.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info("Starting PDF Parse Service...")
        db_engine = create_db_engine(settings.database_url, echo=settings.sql_debug)
        init_db(db_engine)
        session_factory = create_session_factory(db_engine)

        job_store = JobStore(session_factory)
        delivery_store = DeliveryStore(session_factory)
        dispatcher = WebhookDispatcher(delivery_store, settings, transport=webhook_transport)
        engine = extraction_engine or DocumentExtractionEngine(
            PDFService(),
            AIService(api_key=settings.openai_api_key, model=settings.openai_model),
        )
        scheduler = ParseJobScheduler(
            job_store,
            engine,
            settings,
            fetcher=SourceFetcher(
                max_bytes=settings.max_file_size_bytes,
                timeout=settings.fetch_timeout_seconds,
                transport=fetch_transport,
            ),
            dispatcher=dispatcher,
        )
        coordinator = BatchCoordinator(job_store, scheduler, settings, dispatcher=dispatcher)

        app.state.settings = settings
        app.state.job_store = job_store
        app.state.delivery_store = delivery_store
        app.state.dispatcher = dispatcher
        app.state.scheduler = scheduler
        app.state.batches = coordinator
        app.state.rate_limiter = FixedWindowRateLimiter(
            settings.rate_limits,
            window_seconds=settings.rate_limit_window_seconds,
            api_keys=settings.api_keys,
        )

        await scheduler.start()
        await coordinator.recover()
        await dispatcher.resume_pending()
        logger.info("Services initialized successfully")
        yield
        logger.info("Shutting down PDF Parse Service...")
        await scheduler.stop()
        await dispatcher.aclose()
        db_engine.dispose()

    app = FastAPI(
        title="PDF Parse API",
        description="PDF parsing with sync, async and batch processing and signed webhooks",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Health Endpoints
    # =========================================================================

    @app.get("/", response_model=HealthResponse)
    async def root() -> HealthResponse:
        """Root endpoint - health check."""
        return HealthResponse(
            status="healthy",
            message="PDF Parse API is running",
            version=__version__,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", message="Service is healthy", version=__version__)

    # =========================================================================
    # Include Routers
    # =========================================================================

    app.include_router(parse.router)
    app.include_router(documents.router)
    app.include_router(batches.router)
    app.include_router(webhooks.router)

    # =========================================================================
    # Exception Handlers
    # =========================================================================

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        """Render service errors as the error envelope."""
        headers = dict(exc.headers)
        retry_after = exc.details.get("retry_after")
        if retry_after is not None:
            headers.setdefault("Retry-After", str(int(retry_after)))
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_envelope(),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Render request validation errors as invalid_request."""
        errors = [
            {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ServiceError(
                ErrorCode.INVALID_REQUEST,
                "Request validation failed",
                details={"errors": errors},
            ).to_envelope(),
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.parse_service.main:app", host="0.0.0.0", port=8000)
