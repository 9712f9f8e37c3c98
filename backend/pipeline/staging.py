"""
Staging Orchestrator
====================
Drives a job from "image submitted" to "watermarked preview available".

    validate → decode → upload original → share original
             → render (watermarked) → store preview → share preview

Every arrow is a hard failure point. Nothing is cleaned up on failure: a
half-uploaded original stays in Dropbox.
"""

import base64
import binascii
import re
from typing import Any, Optional

import structlog

from pipeline import job_identity
from pipeline.errors import ValidationError
from schemas.staging import JobStatus, RenderRequest, StagingJob, StagingOutcome

_BASE64_BODY = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_WHITESPACE = re.compile(r"\s")

logger = structlog.get_logger().bind(component="staging_orchestrator")


# =============================================================================
# PAYLOAD DECODING
# =============================================================================

def decode_image_payload(value: Any) -> bytes:
    """
    Decode a data URI (``data:image/jpeg;base64,<body>``) or bare base64.

    Raises:
        ValidationError: payload is not a string, not base64, or decodes to
        nothing.
    """
    if not isinstance(value, str):
        raise ValidationError("Invalid image payload")

    _, comma, body = value.partition(",")
    payload = body if comma else value
    payload = _WHITESPACE.sub("", payload)

    if not payload or not _BASE64_BODY.match(payload):
        raise ValidationError("Invalid image payload")

    # Clients may strip trailing padding
    payload += "=" * (-len(payload) % 4)

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid image payload")

    if not data:
        raise ValidationError("Invalid image payload")
    return data


def encode_image_payload(data: bytes, mime_type: Optional[str] = None) -> str:
    """Reverse of decode_image_payload; bare base64 unless a MIME type is given."""
    encoded = base64.b64encode(data).decode("ascii")
    if mime_type:
        return f"data:{mime_type};base64,{encoded}"
    return encoded


def validate_submission(image_base64: Any, room_type: Any, style: Any) -> bytes:
    """Boundary checks; runs before any external call."""
    if not image_base64 or not room_type or not style:
        raise ValidationError("Missing required fields")
    if not isinstance(room_type, str) or not isinstance(style, str):
        raise ValidationError("Missing required fields")
    if not room_type.strip() or not style.strip():
        raise ValidationError("Missing required fields")
    return decode_image_payload(image_base64)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class StagingOrchestrator:
    """
    Example:
        orchestrator = StagingOrchestrator(asset_store, render_client)
        outcome = await orchestrator.stage(image_base64, "living_room", "modern")
        outcome.metadata()  # -> JobMetadata for checkout
    """

    def __init__(self, asset_store, render_client, job_id_factory=job_identity.new_job_id):
        self.assets = asset_store
        self.renderer = render_client
        self._new_job_id = job_id_factory

    async def stage(self, image_base64: Any, room_type: Any, style: Any) -> StagingOutcome:
        image_bytes = validate_submission(image_base64, room_type, style)

        job_id = self._new_job_id()
        log = logger.bind(job_id=job_id)
        log.info("staging_started", room_type=room_type, style=style, size_bytes=len(image_bytes))

        stored_original = await self.assets.upload(
            job_identity.original_path(job_id),
            image_bytes,
            mode="overwrite",
            autorename=False,
            mute=True,
        )
        original_url = await self.assets.ensure_shared_link(stored_original)

        job = StagingJob(
            job_id=job_id,
            room_type=room_type,
            style=style,
            original_path=stored_original,
            original_url=original_url,
        )
        log.info("original_stored", path=stored_original)

        result = await self.renderer.render(RenderRequest(
            image_url=original_url,
            room_type=room_type,
            style=style,
            add_watermark=True,
            wait_for_completion=True,
        ))
        log.info("preview_rendered", render_id=result.render_id)

        preview_bytes = await self.renderer.download(result.result_image_url)
        stored_preview = await self.assets.upload(
            job_identity.preview_path(job_id),
            preview_bytes,
            mode="overwrite",
            autorename=False,
            mute=True,
        )
        preview_url = await self.assets.ensure_shared_link(stored_preview)

        job = job.transition_to(
            JobStatus.PREVIEWED,
            preview_path=stored_preview,
            preview_url=preview_url,
        )
        log.info("staging_completed", preview_path=stored_preview)
        return StagingOutcome(job=job)
