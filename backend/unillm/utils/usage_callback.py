from typing import Optional

import httpx
import structlog

from unillm.core.config import settings
from unillm.services.telemetry import TelemetryEvent

logger = structlog.get_logger()


class UsageCallbackSink:
    """
    POSTs finished and failed requests to an external usage endpoint
    (billing, quota). Configure USAGE_CALLBACK_URL and USAGE_CALLBACK_AUTH.
    Failures are logged and ignored.
    """

    reported = ("request_completed", "request_failed")

    def __init__(
        self,
        url: Optional[str] = None,
        auth: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url or settings.USAGE_CALLBACK_URL
        self.auth = auth or settings.USAGE_CALLBACK_AUTH
        self._client = client

    async def record(self, event: TelemetryEvent) -> None:
        if not self.url or event.name not in self.reported:
            return
        headers = {"Content-Type": "application/json"}
        if self.auth:
            headers["Authorization"] = self.auth
        payload = event.model_dump(mode="json")
        try:
            if self._client is not None:
                await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("usage_callback_failed", err=str(e))
