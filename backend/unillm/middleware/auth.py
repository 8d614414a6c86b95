import hmac

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from unillm.core.config import settings

PUBLIC_PATHS = {"/", "/metrics", "/docs", "/redoc", f"{settings.API_V1_STR}/openapi.json"}


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """Requires X-API-Key when GATEWAY_API_KEY is set; the gateway is public otherwise."""

    async def dispatch(self, request: Request, call_next):
        expected = settings.GATEWAY_API_KEY
        if not expected or request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        supplied = request.headers.get("X-API-Key") or ""
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "Invalid API key"})
        return await call_next(request)
