# storage/__init__.py
# ============================================================================
# VIRTUAL STAGING SERVICE — STORAGE MODULE
# ============================================================================
# Dropbox asset store used by both the staging and fulfillment flows
# ============================================================================

from storage.dropbox_storage import (
    DropboxAssetStore,
    ErrorCause,
    classify_error,
    create_dropbox_client,
    normalize_link_format,
)

__all__ = [
    "DropboxAssetStore",
    "ErrorCause",
    "classify_error",
    "create_dropbox_client",
    "normalize_link_format",
]
