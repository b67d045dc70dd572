"""LearnHub Progress API - Main Application."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.certificates import (
    CertificateIssuanceWorker,
    CertificateIssuer,
    HttpCertificateIssuer,
    UnconfiguredCertificateIssuer,
)
from src.config import Settings, get_settings
from src.core.context import get_request_id
from src.core.database import init_async_cassandra, shutdown_async_cassandra
from src.core.events import DomainEventBus
from src.core.logging import configure_structlog, get_logger
from src.core.middleware import RequestContextMiddleware
from src.core.redis import init_redis, shutdown_redis
from src.courses import CassandraCourseRepository, InMemoryCourseRepository
from src.health.router import router as health_router
from src.progress.repository import (
    CassandraEnrollmentRepository,
    InMemoryEnrollmentRepository,
)
from src.progress.router import courses_router as course_enrollments_router
from src.progress.router import router as enrollments_router
from src.progress.service import ProgressService


# Configure logging early (before creating logger)
settings = get_settings()
configure_structlog(settings, log_dir=Path(settings.log_dir))

logger = get_logger(__name__)


def build_certificate_issuer(settings: Settings) -> CertificateIssuer:
    if not settings.certificate_issuer_configured:
        logger.warning(
            "certificate_issuer_not_configured",
            message="Completed enrollments will not receive certificates",
        )
        return UnconfiguredCertificateIssuer()

    return HttpCertificateIssuer(
        base_url=settings.certificate_issuer_url or "",
        api_key=settings.certificate_issuer_api_key or "",
        timeout=settings.certificate_issuer_timeout,
    )


def build_progress_service(
    settings: Settings,
    cassandra_session: Any = None,
    event_bus: DomainEventBus | None = None,
    certificate_issuer: CertificateIssuer | None = None,
) -> ProgressService:
    """Wire repositories, bus and issuer into a ProgressService."""
    if cassandra_session is not None:
        enrollments = CassandraEnrollmentRepository(
            cassandra_session, settings.cassandra_keyspace
        )
        courses = CassandraCourseRepository(cassandra_session, settings.cassandra_keyspace)
    else:
        enrollments = InMemoryEnrollmentRepository()
        courses = InMemoryCourseRepository()

    return ProgressService(
        enrollments=enrollments,
        courses=courses,
        certificate_issuer=certificate_issuer or build_certificate_issuer(settings),
        event_bus=event_bus or DomainEventBus(),
        passing_score=settings.progress_passing_score,
        recent_limit=settings.progress_recent_limit,
        max_save_retries=settings.progress_max_save_retries,
        default_duration_days=settings.enrollment_default_duration_days,
        issue_certificates_inline=not settings.certificate_issuance_async,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "starting_application",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        persistence_backend=settings.persistence_backend,
    )

    # Redis is optional: events still reach in-process subscribers
    redis_client = None
    if settings.redis_enabled:
        try:
            redis_client = await init_redis()
        except Exception as e:
            logger.warning(
                "redis_init_skipped",
                error=str(e),
                message="Running without Redis - events stay in-process",
            )
    app.state.redis = redis_client

    event_bus = DomainEventBus(
        redis_client=redis_client,
        channel_prefix=settings.redis_events_channel_prefix,
    )
    app.state.event_bus = event_bus
    app.state.progress_service = None
    app.state.certificate_worker = None

    try:
        cassandra_session = None
        if settings.persistence_backend == "cassandra":
            cassandra_session = await init_async_cassandra()

        issuer = build_certificate_issuer(settings)
        app.state.progress_service = build_progress_service(
            settings,
            cassandra_session=cassandra_session,
            event_bus=event_bus,
            certificate_issuer=issuer,
        )
        logger.info("progress_service_initialized")

        if settings.certificate_issuance_async:
            worker = CertificateIssuanceWorker(
                issuer=issuer,
                progress_service=app.state.progress_service,
                max_retries=settings.certificate_max_retries,
                base_delay=settings.certificate_retry_base_delay,
            )
            worker.register(event_bus)
            await worker.start()
            app.state.certificate_worker = worker
    except Exception as e:
        logger.warning(
            "database_init_skipped",
            error=str(e),
            message="Running without database connection",
        )

    yield

    # Shutdown
    logger.info("shutting_down_application")
    if app.state.certificate_worker is not None:
        await app.state.certificate_worker.stop()
    await shutdown_redis()
    if settings.persistence_backend == "cassandra":
        await shutdown_async_cassandra()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Never expose stack traces; the handlers below log details instead
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Enrollment and progress tracking API",
        debug=False,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )

    # Request context middleware (must be added first - outermost)
    app.add_middleware(
        RequestContextMiddleware,
        log_requests=settings.log_requests,
        exclude_paths=settings.log_exclude_paths,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        max_age=settings.cors_max_age,
    )

    def _get_request_id_safe(request: Request) -> str | None:
        if hasattr(request.state, "request_id"):
            return request.state.request_id
        return get_request_id()

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> ORJSONResponse:
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=str(exc.detail),
            path=request.url.path,
            method=request.method,
        )

        return ORJSONResponse(
            status_code=exc.status_code,
            content={
                "error": True,
                "message": str(exc.detail)
                if exc.status_code < status.HTTP_500_INTERNAL_SERVER_ERROR
                else "Internal server error",
                "status_code": exc.status_code,
                "request_id": _get_request_id_safe(request),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> ORJSONResponse:
        # Field names only: quiz answers and submissions stay out of the logs
        logger.warning(
            "validation_error",
            fields=[".".join(str(loc) for loc in err.get("loc", [])) for err in exc.errors()],
            path=request.url.path,
            method=request.method,
        )

        return ORJSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": True,
                "message": "Validation error",
                "status_code": 422,
                "request_id": _get_request_id_safe(request),
                "details": [
                    {
                        "field": ".".join(str(loc) for loc in err.get("loc", [])),
                        "message": err.get("msg", "Invalid value"),
                    }
                    for err in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> ORJSONResponse:
        logger.exception(
            "unhandled_exception",
            error_type=type(exc).__name__,
            error_message=str(exc),
            path=request.url.path,
            method=request.method,
        )

        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": True,
                "message": "An unexpected error occurred. Please try again later.",
                "status_code": 500,
                "request_id": _get_request_id_safe(request),
            },
        )

    app.include_router(health_router)
    app.include_router(enrollments_router)
    app.include_router(course_enrollments_router)

    @app.get("/", include_in_schema=False)
    async def root(request: Request) -> dict[str, str]:
        return {
            "message": "LearnHub API",
            "version": settings.app_version,
            "docs": f"{request.url}docs",
        }

    return app


app = create_app()
