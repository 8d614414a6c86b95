import time
import structlog
from fastapi import APIRouter
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from unillm.services.telemetry import TelemetryEvent

logger = structlog.get_logger()

REQ_COUNTER = Counter("http_requests_total", "Total HTTP Requests", ["method", "path", "status"])
REQ_LATENCY = Histogram("http_request_latency_seconds", "Request latency", ["method", "path"])

COMPLETIONS = Counter("llm_completions_total", "Completions by outcome", ["provider", "model", "outcome"])
COMPLETION_ERRORS = Counter("llm_completion_errors_total", "Failed completions by error kind", ["provider", "kind"])
COMPLETION_LATENCY = Histogram("llm_completion_latency_seconds", "Completion latency", ["provider", "model"])
COMPLETION_TOKENS = Counter(
    "llm_tokens_total", "Tokens reported or estimated", ["provider", "model", "direction", "estimated"]
)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            latency = time.perf_counter() - start
            path = request.url.path
            method = request.method
            REQ_COUNTER.labels(method, path, status).inc()
            REQ_LATENCY.labels(method, path).observe(latency)


class PrometheusTelemetrySink:
    """Turns completion telemetry into Prometheus counters and histograms."""

    def record(self, event: TelemetryEvent) -> None:
        if event.name == "request_started":
            return
        outcome = event.name.removeprefix("request_")
        COMPLETIONS.labels(event.provider_id, event.model_id, outcome).inc()
        if event.latency_ms is not None:
            COMPLETION_LATENCY.labels(event.provider_id, event.model_id).observe(event.latency_ms / 1000)
        if event.error_kind is not None:
            COMPLETION_ERRORS.labels(event.provider_id, event.error_kind.value).inc()
            logger.info(
                "completion_failed",
                provider=event.provider_id,
                model=event.model_id,
                kind=event.error_kind.value,
                attempts=event.attempts,
            )
        estimated = "true" if event.usage_estimated else "false"
        if event.prompt_tokens:
            COMPLETION_TOKENS.labels(event.provider_id, event.model_id, "prompt", estimated).inc(event.prompt_tokens)
        if event.completion_tokens:
            COMPLETION_TOKENS.labels(event.provider_id, event.model_id, "completion", estimated).inc(
                event.completion_tokens
            )


metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
