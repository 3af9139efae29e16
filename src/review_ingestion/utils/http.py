"""
JSON-over-HTTP client with retries for transient upstream failures
"""
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.config import Settings, get_settings
from ..core.exceptions import PlatformAPIError


def is_transient_error(exc: BaseException) -> bool:
    """Connection failures, rate limits and 5xx are worth retrying; 4xx are not"""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, PlatformAPIError) and exc.status_code is not None:
        return exc.status_code == 429 or exc.status_code >= 500
    return False


def error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("status") or str(error)
    if error:
        return payload.get("error_description") or str(error)
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.reason_phrase


class JsonApiClient:
    """Owns an httpx.AsyncClient (or borrows an injected one)"""

    api_name: str = "upstream"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT)

    async def _request_json(self, method: str, url: str, **kwargs) -> Any:
        """Send a request, retrying transient failures, and decode JSON"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.HTTP_RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=1,
                min=self.settings.HTTP_RETRY_MIN_WAIT,
                max=self.settings.HTTP_RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception(is_transient_error),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self.client.request(method, url, **kwargs)
                if response.status_code >= 400:
                    raise PlatformAPIError(
                        f"{self.api_name} API error {response.status_code}: {error_detail(response)}",
                        status_code=response.status_code,
                    )
        try:
            return response.json()
        except ValueError as e:
            raise PlatformAPIError(f"{self.api_name} API returned malformed JSON") from e

    async def _get_json(self, url: str, **kwargs) -> Any:
        return await self._request_json("GET", url, **kwargs)

    async def _post_json(self, url: str, **kwargs) -> Any:
        return await self._request_json("POST", url, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
