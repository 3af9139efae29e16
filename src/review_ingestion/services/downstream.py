"""
Best-effort triggers for downstream backend jobs
"""
from typing import Any, Dict, Optional

import httpx

from ..core.config import Settings, get_settings
from ..core.logging import get_logger

logger = get_logger(__name__)


class DownstreamNotifier:
    """Fire-and-forget POSTs to the hosted functions endpoint"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT)

    async def notify(self, job_name: str, payload: Dict[str, Any]) -> bool:
        """
        POST ``payload`` to ``{FUNCTIONS_BASE_URL}/{job_name}``.

        Never raises: failures are logged and reported as False.
        """
        base_url = self.settings.FUNCTIONS_BASE_URL
        if not base_url:
            logger.warning("Functions base URL not configured, skipping downstream job", job=job_name)
            return False

        headers = {"Content-Type": "application/json"}
        if self.settings.FUNCTIONS_SERVICE_KEY:
            headers["Authorization"] = f"Bearer {self.settings.FUNCTIONS_SERVICE_KEY}"

        try:
            response = await self.client.post(f"{base_url.rstrip('/')}/{job_name}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Downstream job trigger failed", job=job_name, error=str(e))
            return False

        if response.status_code >= 400:
            logger.warning("Downstream job rejected", job=job_name, status_code=response.status_code)
            return False

        logger.info("Triggered downstream job", job=job_name)
        return True

    async def trigger_sentiment_analysis(self, connection_id: str) -> bool:
        return await self.notify(self.settings.SENTIMENT_ANALYSIS_JOB, {"connectionId": connection_id})

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
