"""
Staging Pipeline Errors
=======================
Single exception hierarchy for the staging → checkout → fulfillment flow.

Every error carries the HTTP status the boundary should answer with, a
message that is safe to show the caller, and optional ``details`` that are
only ever written to the server log (raw provider payloads, SDK messages).
"""

from typing import Any, Optional


class StagingError(Exception):
    """Base class for all pipeline failures."""

    status_code: int = 500
    public_message: str = "Server error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.public_message
        self.details = details
        super().__init__(self.message)

    @property
    def exposes_message(self) -> bool:
        """Client-side faults return their own message; the rest stay generic."""
        return self.status_code < 500


class ValidationError(StagingError):
    status_code = 400
    public_message = "Invalid request"


class InvalidSignature(StagingError):
    status_code = 400
    public_message = "Invalid Stripe signature"


class MissingMetadata(StagingError):
    status_code = 400
    public_message = "Missing staging metadata on session"


class ConfigurationError(StagingError):
    status_code = 500
    public_message = "Service is not configured"

    @property
    def exposes_message(self) -> bool:
        # Names the missing setting, never its value
        return True


class UpstreamUnavailable(StagingError):
    """Rendering or asset-store transport/auth failure."""

    status_code = 500
    public_message = "Upstream service unavailable"


class AssetUnavailable(UpstreamUnavailable):
    """Dropbox call failed; ``cause`` is the classified ErrorCause."""

    def __init__(self, message: Optional[str] = None, details: Any = None, cause=None):
        super().__init__(message, details)
        self.cause = cause


class RenderFailed(UpstreamUnavailable):
    """Rendering provider returned no usable result. ``details`` holds its raw payload."""

    public_message = "Staging failed"

    def __init__(self, message: Optional[str] = None, details: Any = None, status: Optional[int] = None):
        super().__init__(message, details)
        self.upstream_status = status


class FulfillmentFailed(StagingError):
    status_code = 500
    public_message = "Virtual staging failed"


class DownloadFailed(StagingError):
    status_code = 500
    public_message = "Unable to download final image"
