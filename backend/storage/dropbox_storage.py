# storage/dropbox_storage.py
# ============================================================================
# VIRTUAL STAGING SERVICE — DROPBOX ASSET STORE
# ============================================================================
# Upload, folder and sharing-link management on top of the Dropbox SDK.
# The SDK is blocking, so every call runs in the default executor.
# ============================================================================

import asyncio
import logging
import re
from enum import Enum
from typing import Optional

import dropbox
import requests
from dropbox import exceptions as dbx_exceptions
from dropbox.files import WriteMode
from dropbox.sharing import (
    AccessLevel,
    MemberSelector,
    RequestedVisibility,
    SharedLinkSettings,
)

from pipeline.errors import AssetUnavailable, ConfigurationError
from schemas.staging import LinkVisibility, RecipientGrant, ShareLink

logger = logging.getLogger("VirtualStaging.Storage")

PROVIDER_ERRORS = (dbx_exceptions.DropboxException, requests.exceptions.RequestException)

RAW_MARKER = "raw=1"
_RAW_PARAM = re.compile(r"[?&]raw=1(?:&|$)")
_LANDING_PARAM = re.compile(r"([?&])dl=[01](?=&|$)")


class ErrorCause(str, Enum):
    """Closed set of Dropbox failure causes that fallback logic switches on."""
    CONFLICT = "conflict"
    AUTH = "auth"
    TRANSPORT = "transport"
    NOT_FOUND = "not_found"
    OTHER = "other"


# ============================================================================
# SECTION 1: ERROR CLASSIFICATION
# ============================================================================

def _union_is(value, tag: str) -> bool:
    check = getattr(value, f"is_{tag}", None)
    return callable(check) and bool(check())


def _classify_api_union(error) -> ErrorCause:
    if _union_is(error, "shared_link_already_exists"):
        return ErrorCause.CONFLICT

    if _union_is(error, "path"):
        lookup = error.get_path()
        # UploadError wraps the WriteError in UploadWriteFailed.reason
        lookup = getattr(lookup, "reason", lookup)
        if _union_is(lookup, "conflict"):
            return ErrorCause.CONFLICT
        if _union_is(lookup, "not_found"):
            return ErrorCause.NOT_FOUND
        if _union_is(lookup, "no_write_permission"):
            return ErrorCause.AUTH

    if _union_is(error, "not_found"):
        return ErrorCause.NOT_FOUND
    if _union_is(error, "access_denied") or _union_is(error, "no_permission"):
        return ErrorCause.AUTH
    return ErrorCause.OTHER


def classify_error(exc: BaseException) -> ErrorCause:
    """Map a Dropbox SDK / transport exception to an ErrorCause."""
    if isinstance(exc, dbx_exceptions.ApiError):
        return _classify_api_union(exc.error)
    if isinstance(exc, dbx_exceptions.AuthError):
        return ErrorCause.AUTH
    if isinstance(exc, (dbx_exceptions.RateLimitError, dbx_exceptions.InternalServerError)):
        return ErrorCause.TRANSPORT
    if isinstance(exc, dbx_exceptions.HttpError):
        if exc.status_code == 409:
            return ErrorCause.CONFLICT
        if exc.status_code in (401, 403):
            return ErrorCause.AUTH
        if exc.status_code >= 500:
            return ErrorCause.TRANSPORT
        return ErrorCause.OTHER
    if isinstance(exc, requests.exceptions.RequestException):
        return ErrorCause.TRANSPORT
    return ErrorCause.OTHER


# ============================================================================
# SECTION 2: LINK FORMAT
# ============================================================================

def normalize_link_format(url: Optional[str]) -> str:
    """
    Turn a Dropbox landing-page link into a direct-content link.

    https://dl/x?dl=0         -> https://dl/x?raw=1
    https://dl/x?rlkey=k      -> https://dl/x?rlkey=k&raw=1
    https://dl/x?raw=1        -> unchanged
    """
    if not isinstance(url, str) or not url:
        return ""

    if _RAW_PARAM.search(url):
        return url

    if _LANDING_PARAM.search(url):
        return _LANDING_PARAM.sub(lambda m: m.group(1) + RAW_MARKER, url, count=1)

    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{RAW_MARKER}"


def create_dropbox_client(settings) -> dropbox.Dropbox:
    """Build the SDK client; refresh-token credentials win over a static token."""
    settings.require_dropbox()
    if settings.dropbox_refresh_token and settings.dropbox_app_key:
        return dropbox.Dropbox(
            oauth2_refresh_token=settings.dropbox_refresh_token,
            app_key=settings.dropbox_app_key,
            app_secret=settings.dropbox_app_secret,
        )
    return dropbox.Dropbox(oauth2_access_token=settings.dropbox_access_token)


# ============================================================================
# SECTION 3: ASSET STORE
# ============================================================================

class DropboxAssetStore:
    """
    Dropbox-backed asset store for originals, previews and finals.

    Handles:
    - Uploads with add/overwrite semantics
    - Idempotent shared-link creation (create, then list on conflict)
    - Password-gated links with a temporary-link fallback
    - Best-effort per-recipient access grants
    """

    def __init__(self, client):
        self._client = client

    async def _run(self, call):
        if self._client is None:
            raise ConfigurationError("Missing Dropbox access token", details="DROPBOX_ACCESS_TOKEN")
        return await asyncio.get_event_loop().run_in_executor(None, call)

    def _unavailable(self, operation: str, path: str, exc: BaseException) -> AssetUnavailable:
        cause = classify_error(exc)
        logger.error(f"Dropbox {operation} failed for {path} ({cause.value}): {exc}")
        return AssetUnavailable(
            f"Dropbox {operation} failed",
            details={"path": path, "cause": cause.value, "error": str(exc)},
            cause=cause,
        )

    async def upload(
        self,
        path: str,
        data: bytes,
        mode: str = "add",
        autorename: bool = False,
        mute: bool = False,
    ) -> str:
        """
        Store bytes at ``path``.

        Returns:
            The path Dropbox actually wrote (differs from ``path`` only when
            autorename kicked in).
        """
        write_mode = WriteMode.overwrite if mode == "overwrite" else WriteMode.add

        def upload():
            return self._client.files_upload(
                data,
                path,
                mode=write_mode,
                autorename=autorename,
                mute=mute,
            )

        try:
            result = await self._run(upload)
        except PROVIDER_ERRORS as e:
            raise self._unavailable("upload", path, e) from e

        stored = getattr(result, "path_display", None) or path
        logger.info(f"Uploaded {len(data)} bytes to {stored}")
        return stored

    async def ensure_folder(self, path: str) -> bool:
        """Create ``path``; an existing folder is success. Returns True if created."""
        if not path:
            return False

        def create():
            return self._client.files_create_folder_v2(path, autorename=False)

        try:
            await self._run(create)
        except PROVIDER_ERRORS as e:
            if classify_error(e) is ErrorCause.CONFLICT:
                logger.debug(f"Folder already exists: {path}")
                return False
            raise self._unavailable("create_folder", path, e) from e

        logger.info(f"Created folder: {path}")
        return True

    async def list_shared_links(self, path: str) -> list:
        def list_links():
            return self._client.sharing_list_shared_links(path=path, direct_only=True)

        result = await self._run(list_links)
        return [link.url for link in (getattr(result, "links", None) or []) if getattr(link, "url", None)]

    async def ensure_shared_link(self, path: str) -> str:
        """Direct-content URL for ``path``, reusing an existing link if Dropbox has one."""

        def create():
            return self._client.sharing_create_shared_link_with_settings(path)

        try:
            created = await self._run(create)
            return normalize_link_format(created.url)
        except PROVIDER_ERRORS as e:
            if classify_error(e) is not ErrorCause.CONFLICT:
                raise self._unavailable("create_shared_link", path, e) from e
            original_error = e

        try:
            existing = await self.list_shared_links(path)
        except PROVIDER_ERRORS as e:
            raise self._unavailable("list_shared_links", path, e) from e

        if not existing:
            raise self._unavailable("create_shared_link", path, original_error) from original_error

        logger.debug(f"Reusing existing shared link for {path}")
        return normalize_link_format(existing[0])

    async def get_temporary_link(self, path: str) -> str:
        def temporary():
            return self._client.files_get_temporary_link(path)

        try:
            result = await self._run(temporary)
        except PROVIDER_ERRORS as e:
            raise self._unavailable("get_temporary_link", path, e) from e
        return result.link

    async def create_gated_link(self, path: str, password: str) -> ShareLink:
        """
        Access-gated link for a paid asset.

        Tiers:
            1. password-protected shared link
            2. on conflict: the link that already exists for the path
            3. on any other failure (or no existing link): temporary link
        """
        settings = SharedLinkSettings(
            requested_visibility=RequestedVisibility.password,
            link_password=password,
        )

        def create():
            return self._client.sharing_create_shared_link_with_settings(path, settings=settings)

        try:
            created = await self._run(create)
            return ShareLink(path=path, visibility=LinkVisibility.PASSWORD, url=created.url)
        except PROVIDER_ERRORS as e:
            tier_one_error = e
            cause = classify_error(e)

        if cause is ErrorCause.CONFLICT:
            try:
                existing = await self.list_shared_links(path)
            except PROVIDER_ERRORS as e:
                raise self._unavailable("list_shared_links", path, e) from tier_one_error
            if existing:
                # Only password links are ever created on final paths
                return ShareLink(path=path, visibility=LinkVisibility.PASSWORD, url=existing[0])
            logger.warning(f"Link conflict for {path} but none listed; using temporary link")
        else:
            logger.warning(
                f"Password link failed for {path} ({cause.value}): {tier_one_error}; "
                "falling back to temporary link"
            )

        try:
            url = await self.get_temporary_link(path)
        except AssetUnavailable as e:
            raise AssetUnavailable(
                "Unable to create a delivery link",
                details={"path": path, "password_link_error": str(tier_one_error), "temporary_link_error": e.details},
                cause=cause,
            ) from tier_one_error

        return ShareLink(
            path=path,
            visibility=LinkVisibility.TEMPORARY,
            url=url,
            fallback_cause=cause.value,
        )

    async def grant_recipient_access(
        self,
        path: str,
        email: str,
        message: Optional[str] = None,
    ) -> RecipientGrant:
        """Add ``email`` as a viewer of ``path``. Never raises for provider failures."""

        def add_member():
            return self._client.sharing_add_file_member(
                path,
                [MemberSelector.email(email)],
                custom_message=message,
                access_level=AccessLevel.viewer,
            )

        try:
            await self._run(add_member)
        except PROVIDER_ERRORS as e:
            cause = classify_error(e)
            logger.warning(f"Unable to add Dropbox file member {email} on {path} ({cause.value}): {e}")
            return RecipientGrant(email=email, granted=False, error=f"{cause.value}: {e}")

        logger.info(f"Granted {email} viewer access to {path}")
        return RecipientGrant(email=email, granted=True)
