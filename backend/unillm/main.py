from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.routing import APIRoute
from starlette.middleware.cors import CORSMiddleware

from unillm.api.main import api_router
from unillm.core.config import settings
from unillm.core.logging import configure_logging
from unillm.middleware.auth import ApiKeyAuthMiddleware
from unillm.middleware.request_id import RequestIdMiddleware
from unillm.observability import MetricsMiddleware, PrometheusTelemetrySink, metrics_router
from unillm.services.credentials import CopilotCredentialSource, EnvCredentials
from unillm.services.orchestrator import CompletionOrchestrator
from unillm.services.telemetry import FanOutSink
from unillm.utils.usage_callback import UsageCallbackSink

logger = structlog.get_logger()


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}" if route.tags else route.name


def init_sentry() -> bool:
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN), traces_sample_rate=1.0)
        return True
    return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = CompletionOrchestrator(
            telemetry=FanOutSink([PrometheusTelemetrySink(), UsageCallbackSink()]),
        )
    if getattr(app.state, "credentials", None) is None:
        app.state.credentials = CopilotCredentialSource(EnvCredentials(), app.state.orchestrator.transport)
    logger.info("gateway_started", providers=[p.id for p in app.state.orchestrator.list_providers()])
    try:
        yield
    finally:
        await app.state.orchestrator.aclose()


def create_app() -> FastAPI:
    init_sentry()
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(ApiKeyAuthMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=512)

    # Set all CORS enabled origins
    if settings.all_cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.all_cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/", include_in_schema=False)
    async def health():
        return {"status": "ok", "service": settings.PROJECT_NAME}

    app.include_router(api_router, prefix=settings.API_V1_STR)
    app.include_router(metrics_router)
    return app


app = create_app()
