# schemas/staging.py
# ============================================================================
# VIRTUAL STAGING SERVICE — JOB + PROVIDER SCHEMAS
# ============================================================================
# Purpose: Type-safe models for the staging job lifecycle
#
# - StagingJob is never stored; it is rebuilt from Stripe session metadata
# - JobMetadata is the versioned join key between staging and fulfillment
# - Render/ShareLink models describe single provider round-trips
# ============================================================================

from typing import Dict, Any, Optional, Mapping
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from pipeline.errors import MissingMetadata
from pipeline import job_identity


METADATA_SCHEMA_VERSION = "1"


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class JobStatus(str, Enum):
    SUBMITTED = "submitted"
    PREVIEWED = "previewed"
    PAID = "paid"
    FULFILLED = "fulfilled"
    FAILED = "failed"


class LinkVisibility(str, Enum):
    PUBLIC_RAW = "public_raw"
    PASSWORD = "password"
    RECIPIENT = "recipient"
    TEMPORARY = "temporary"


# ============================================================================
# SECTION 2: JOB
# ============================================================================

class StagingJob(BaseModel):
    """One end-to-end request to preview and (if paid) deliver a rendered room."""
    job_id: str
    room_type: str = ""
    style: str = ""
    original_path: str
    original_url: str
    preview_path: Optional[str] = None
    preview_url: Optional[str] = None
    final_path: Optional[str] = None
    status: JobStatus = JobStatus.SUBMITTED

    def transition_to(self, new_status: JobStatus, **updates: Any) -> "StagingJob":
        """Immutable state transition."""
        return self.model_copy(update={"status": new_status, **updates})


class JobMetadata(BaseModel):
    """
    Fields that travel inside the Stripe session and come back on the
    completed-checkout webhook. Stripe metadata values are strings only.
    """
    schema_version: str = METADATA_SCHEMA_VERSION
    job_id: Optional[str] = None
    dropbox_path: Optional[str] = None
    image_url: str
    room_type: str = ""
    style: str = ""

    @computed_field
    @property
    def original_path(self) -> str:
        if self.dropbox_path:
            return self.dropbox_path
        return job_identity.original_path(self.job_id)

    def to_stripe_metadata(self) -> Dict[str, str]:
        return {
            "schema_version": str(self.schema_version),
            "job_id": str(self.job_id or ""),
            "dropbox_path": str(self.dropbox_path or ""),
            "image_url": str(self.image_url),
            "room_type": str(self.room_type or ""),
            "style": str(self.style or ""),
        }

    @classmethod
    def from_stripe_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "JobMetadata":
        metadata = metadata or {}
        image_url = metadata.get("image_url")
        job_id = metadata.get("job_id") or None
        dropbox_path = metadata.get("dropbox_path") or None

        if not image_url or not (dropbox_path or job_id):
            missing = [
                name for name, value in (("image_url", image_url), ("dropbox_path", dropbox_path or job_id))
                if not value
            ]
            raise MissingMetadata(details={"missing": missing})

        return cls(
            schema_version=str(metadata.get("schema_version") or METADATA_SCHEMA_VERSION),
            job_id=job_id,
            dropbox_path=dropbox_path,
            image_url=str(image_url),
            room_type=str(metadata.get("room_type") or ""),
            style=str(metadata.get("style") or ""),
        )

    def to_job(self, status: JobStatus = JobStatus.PAID) -> StagingJob:
        return StagingJob(
            job_id=self.job_id or "",
            room_type=self.room_type,
            style=self.style,
            original_path=self.original_path,
            original_url=self.image_url,
            status=status,
        )


# ============================================================================
# SECTION 3: RENDERING
# ============================================================================

class RenderRequest(BaseModel):
    image_url: str
    room_type: str
    style: str
    add_watermark: bool = True
    wait_for_completion: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "image_url": self.image_url,
            "room_type": self.room_type,
            "style": self.style,
            "wait_for_completion": self.wait_for_completion,
            "add_virtually_staged_watermark": self.add_watermark,
        }


class RenderResult(BaseModel):
    result_image_url: str
    render_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderResponse(BaseModel):
    """Raw rendering-provider round-trip for the pass-through endpoints."""
    ok: bool
    status: int
    data: Any = None


# ============================================================================
# SECTION 4: SHARING + DELIVERY
# ============================================================================

class ShareLink(BaseModel):
    path: str
    visibility: LinkVisibility
    url: str
    # Why the password tier was skipped; None for password links
    fallback_cause: Optional[str] = None


class RecipientGrant(BaseModel):
    """Outcome of the best-effort per-email access grant."""
    email: str
    granted: bool
    error: Optional[str] = None


class StagingOutcome(BaseModel):
    job: StagingJob

    def metadata(self) -> JobMetadata:
        return JobMetadata(
            job_id=self.job.job_id,
            dropbox_path=self.job.original_path,
            image_url=self.job.original_url,
            room_type=self.job.room_type,
            style=self.job.style,
        )

    def to_response(self) -> Dict[str, Any]:
        return {
            "preview_url": self.job.preview_url,
            "job_id": self.job.job_id,
            "dropbox_path": self.job.original_path,
            "preview_path": self.job.preview_path,
            "image_url": self.job.original_url,
            "room_type": self.job.room_type,
            "style": self.job.style,
        }


class CompletedPayment(BaseModel):
    """Verified checkout.session.completed payload, metadata kept verbatim."""
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_email: Optional[str] = None


class FulfillmentResult(BaseModel):
    job_id: Optional[str] = None
    final_image_path: str
    secure_link: Optional[str] = None
    link_visibility: Optional[LinkVisibility] = None
    link_fallback_cause: Optional[str] = None
    customer_email: Optional[str] = None
    recipient_grant: Optional[RecipientGrant] = None

    def to_response(self) -> Dict[str, Any]:
        return {
            "status": "completed",
            "job_id": self.job_id,
            "final_image_path": self.final_image_path,
            "secure_link": self.secure_link,
            "customer_email": self.customer_email,
        }


class VariationResult(BaseModel):
    job_id: str
    render_id: str
    download_url: str
    download_dropbox_path: str
    vsai_result_url: str


class CheckoutResult(BaseModel):
    checkout_url: str
    session_id: Optional[str] = None
