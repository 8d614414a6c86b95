import inspect
from typing import Any, Literal, Optional, Protocol, Sequence, runtime_checkable

import structlog
from pydantic import BaseModel

from unillm.errors import ErrorKind

logger = structlog.get_logger()

TelemetryName = Literal["request_started", "request_completed", "request_failed", "request_cancelled"]


class TelemetryEvent(BaseModel):
    name: TelemetryName
    request_id: str
    provider_id: str
    model_id: str
    latency_ms: Optional[int] = None
    attempts: int = 0
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    usage_estimated: bool = False
    error_kind: Optional[ErrorKind] = None


@runtime_checkable
class TelemetrySink(Protocol):
    def record(self, event: TelemetryEvent) -> Any:
        """May return an awaitable; it is awaited before the request continues."""


async def emit(sink: Optional[TelemetrySink], event: TelemetryEvent) -> None:
    if sink is None:
        return
    try:
        result = sink.record(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        # telemetry never fails a completion
        logger.warning("telemetry_sink_failed", telemetry=event.name, err=str(e))


class FanOutSink:
    """Forwards every event to several sinks; a failing sink does not affect the rest."""

    def __init__(self, sinks: Sequence[TelemetrySink]) -> None:
        self.sinks = list(sinks)

    async def record(self, event: TelemetryEvent) -> None:
        for sink in self.sinks:
            await emit(sink, event)
