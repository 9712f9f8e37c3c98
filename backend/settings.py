# settings.py
# ============================================================================
# VIRTUAL STAGING SERVICE — CONFIGURATION
# ============================================================================
# Environment-driven settings shared by the API server and the pipeline
# ============================================================================

import os
from dataclasses import dataclass
from typing import Optional

from pipeline.errors import ConfigurationError


DEFAULT_VSAI_BASE_URL = "https://api.virtualstagingai.app/v1"


@dataclass
class Settings:
    """Runtime configuration for the staging service."""
    vsai_api_key: Optional[str] = None
    vsai_base_url: str = DEFAULT_VSAI_BASE_URL
    vsai_timeout_seconds: float = 300.0

    dropbox_access_token: Optional[str] = None
    dropbox_refresh_token: Optional[str] = None
    dropbox_app_key: Optional[str] = None
    dropbox_app_secret: Optional[str] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    site_url: str = ""
    product_name: str = "Virtual Staging Image"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            vsai_api_key=os.getenv("VSAI_API_KEY") or None,
            vsai_base_url=os.getenv("VSAI_BASE_URL", DEFAULT_VSAI_BASE_URL),
            vsai_timeout_seconds=float(os.getenv("VSAI_TIMEOUT", "300")),
            dropbox_access_token=os.getenv("DROPBOX_ACCESS_TOKEN") or None,
            dropbox_refresh_token=os.getenv("DROPBOX_REFRESH_TOKEN") or None,
            dropbox_app_key=os.getenv("DROPBOX_APP_KEY") or None,
            dropbox_app_secret=os.getenv("DROPBOX_APP_SECRET") or None,
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            site_url=os.getenv("SITE_URL") or os.getenv("WIX_SITE_URL", ""),
            product_name=os.getenv("PRODUCT_NAME", "Virtual Staging Image"),
        )

    @property
    def has_dropbox_credentials(self) -> bool:
        if self.dropbox_access_token:
            return True
        return bool(self.dropbox_refresh_token and self.dropbox_app_key)

    def require_vsai_api_key(self) -> str:
        if not self.vsai_api_key:
            raise ConfigurationError("Missing Virtual Staging API key", details="VSAI_API_KEY")
        return self.vsai_api_key

    def require_dropbox(self) -> None:
        if not self.has_dropbox_credentials:
            raise ConfigurationError("Missing Dropbox access token", details="DROPBOX_ACCESS_TOKEN")
