import json
from typing import Any, AsyncIterator, Dict

import structlog
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from unillm.api.deps import ApiKeyDep, CredentialsDep, OrchestratorDep
from unillm.errors import ErrorKind, LLMError
from unillm.schemas import MessagesRequest, StreamError
from unillm.services.orchestrator import RequestHandle, collect
from unillm.services.router import resolve_model_ref
from unillm.utils.rate_limit import get_limiter

router = APIRouter(prefix="/messages", tags=["messages"])
logger = structlog.get_logger()

HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.ENCODING_ERROR: 400,
    ErrorKind.UNSUPPORTED_CAPABILITY: 400,
    ErrorKind.CONTEXT_LENGTH_EXCEEDED: 400,
    ErrorKind.UNKNOWN_MODEL: 404,
    ErrorKind.AUTH_FAILED: 502,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.MODEL_OVERLOADED: 503,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.DECODING_ERROR: 502,
    ErrorKind.UNKNOWN: 502,
}


def _sse_format(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _error_body(error: StreamError) -> Dict[str, Any]:
    return {"error": error.model_dump(mode="json")}


async def _event_stream(handle: RequestHandle) -> AsyncIterator[str]:
    try:
        async for event in handle:
            yield _sse_format(event.model_dump(mode="json"))
        yield "data: [DONE]\n\n"
    finally:
        await handle.cancel()


@router.post("/")
async def create_message(
    payload: MessagesRequest,
    orchestrator: OrchestratorDep,
    credentials: CredentialsDep,
    api_key: ApiKeyDep,
):
    limiter = get_limiter(api_key)
    async with limiter:
        try:
            provider_id, model_id = resolve_model_ref(orchestrator.registry.current, payload.model, payload.provider)
            handle = orchestrator.complete(payload.to_canonical(), provider_id, model_id, credentials)
        except LLMError as e:
            raise HTTPException(status_code=HTTP_STATUS[e.kind], detail=e.message)

        if payload.stream:
            return StreamingResponse(
                _event_stream(handle),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                },
            )

        result = await collect(handle)
        if result.error is not None:
            return JSONResponse(status_code=HTTP_STATUS[result.error.kind], content=_error_body(result.error))
        return JSONResponse(content=result.model_dump(mode="json"))
