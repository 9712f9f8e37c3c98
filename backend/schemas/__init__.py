# schemas/__init__.py
# ============================================================================
# VIRTUAL STAGING SERVICE — SCHEMAS MODULE
# ============================================================================

from schemas.staging import (
    JobStatus,
    LinkVisibility,
    StagingJob,
    JobMetadata,
    RenderRequest,
    RenderResult,
    ProviderResponse,
    ShareLink,
    RecipientGrant,
    StagingOutcome,
    CompletedPayment,
    FulfillmentResult,
    VariationResult,
    CheckoutResult,
)

__all__ = [
    "JobStatus",
    "LinkVisibility",
    "StagingJob",
    "JobMetadata",
    "RenderRequest",
    "RenderResult",
    "ProviderResponse",
    "ShareLink",
    "RecipientGrant",
    "StagingOutcome",
    "CompletedPayment",
    "FulfillmentResult",
    "VariationResult",
    "CheckoutResult",
]
