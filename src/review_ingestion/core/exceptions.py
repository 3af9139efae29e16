"""
Error taxonomy for the ingestion pipeline
"""
from typing import Optional


class IngestionError(Exception):
    """Base class for all ingestion pipeline errors"""


class ConfigurationError(IngestionError):
    """Missing API keys, app IDs or endpoint configuration. Never retried."""


class AuthenticationError(IngestionError):
    """User cancelled consent, invalid code or insecure transport"""


class AuthorizationRequired(AuthenticationError):
    """The user must be redirected to the platform consent screen first"""

    def __init__(self, authorization_url: str):
        super().__init__("Authorization required: redirect the user to the consent screen")
        self.authorization_url = authorization_url


class PlatformAPIError(IngestionError):
    """Upstream platform returned an error or an unusable payload"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NoReviewsFoundError(PlatformAPIError):
    """Every data source of a platform came back empty or restricted"""


class PlatformNotFoundError(IngestionError):
    """Platform row is absent from the externally maintained catalog"""


class PlatformUnavailableError(IngestionError):
    """Platform is unknown to the registry or not active"""


class CompanyNotFoundError(IngestionError):
    """No location of the company is known to this service"""
