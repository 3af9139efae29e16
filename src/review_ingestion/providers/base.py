"""
Platform provider interface

Every platform integration implements the same capability set so the
orchestrator can dispatch by platform name without knowing the external
API it is talking to.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..models.schemas import AuthContext, PlatformConfig, PlatformPage, StandardReview
from ..utils.http import JsonApiClient

SECURE_LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def is_secure_origin(url: Optional[str]) -> bool:
    """HTTPS, or plain HTTP on a loopback host"""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme == "https" or parsed.hostname in SECURE_LOCAL_HOSTS


class PlatformProvider(JsonApiClient, ABC):
    """Base class for platform integrations"""

    name: str = ""
    # Whether fetching needs a user-level token (OAuth / SDK login)
    requires_user_auth: bool = True
    # Whether fetch_reviews honours options["posted_after"]
    supports_incremental_fetch: bool = False

    @property
    def api_name(self) -> str:
        return self.name.capitalize()

    @abstractmethod
    def get_platform_config(self) -> PlatformConfig:
        """Display metadata for this platform"""

    @abstractmethod
    async def authenticate(self, auth: Optional[AuthContext] = None) -> str:
        """Return an access token usable for get_user_pages/fetch_reviews"""

    @abstractmethod
    async def get_user_pages(self, access_token: str) -> List[PlatformPage]:
        """List the pages/locations the token grants access to"""

    @abstractmethod
    async def fetch_reviews(
        self,
        page_id: str,
        access_token: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[StandardReview]:
        """Fetch reviews for one page, mapped to StandardReview"""
