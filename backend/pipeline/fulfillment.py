"""
Fulfillment Orchestrator
========================
Drives a job from "payment confirmed" to "final asset delivered".

Flow (checkout.session.completed):
1. Rebuild the job from Stripe session metadata (no database)
2. Re-render the ORIGINAL image without watermark, waiting for completion
3. Download the result fully into memory
4. Ensure the /final folder exists (conflict = already there)
5. Upload with overwrite (webhook redelivery rewrites the same file)
6. Password-gated link, falling back to existing link / temporary link
7. Best-effort viewer grant for the payer's email

Redelivered webhooks run the whole flow again: overwrite-on-upload and
conflict-tolerant folder/link creation make that safe.

pip install structlog
"""

from typing import Optional

import structlog

from pipeline import job_identity
from pipeline.errors import FulfillmentFailed, RenderFailed
from pipeline.payment_gate import CHECKOUT_COMPLETED, PaymentGate, WebhookRouter
from schemas.staging import (
    CompletedPayment,
    FulfillmentResult,
    JobMetadata,
    JobStatus,
    RecipientGrant,
    RenderRequest,
    VariationResult,
)

logger = structlog.get_logger().bind(component="fulfillment_orchestrator")


class FulfillmentOrchestrator:
    """
    Example:
        orchestrator = FulfillmentOrchestrator(asset_store, render_client, gate)
        response = await orchestrator.process_webhook(raw_body, signature)
    """

    def __init__(self, asset_store, render_client, payment_gate: PaymentGate):
        self.assets = asset_store
        self.renderer = render_client
        self.gate = payment_gate

        self.router = WebhookRouter()
        self._register_handlers()

    def _register_handlers(self):
        @self.router.register(CHECKOUT_COMPLETED)
        async def handle_checkout_completed(event: dict):
            payment = self.gate.extract_completed_payment(event)
            result = await self.fulfill(payment)
            return result.to_response()

    # =========================================================================
    # WEBHOOK ENTRY POINT
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify, route, and fulfill. Unrouted event types are acknowledged."""
        event = self.gate.verify_event(payload, signature)

        result = await self.router.route(event)
        if result is None:
            return {"received": True}
        return result

    # =========================================================================
    # FULFILLMENT
    # =========================================================================

    async def fulfill(self, payment: CompletedPayment) -> FulfillmentResult:
        metadata = JobMetadata.from_stripe_metadata(payment.metadata)
        job = metadata.to_job(JobStatus.PAID)

        log = logger.bind(job_id=metadata.job_id, stripe_session_id=payment.session_id)
        log.info("fulfillment_started", original_path=job.original_path)

        try:
            result = await self.renderer.render(RenderRequest(
                image_url=metadata.image_url,
                room_type=metadata.room_type,
                style=metadata.style,
                add_watermark=False,
                wait_for_completion=True,
            ))
        except RenderFailed as e:
            log.error("final_render_failed", details=e.details)
            raise FulfillmentFailed(details=e.details) from e

        final_bytes = await self.renderer.download(result.result_image_url)

        final_path = job_identity.final_path(job.original_path)
        await self.assets.ensure_folder(job_identity.parent_folder(final_path))
        await self.assets.upload(final_path, final_bytes, mode="overwrite", autorename=False, mute=False)
        log.info("final_stored", final_path=final_path, size_bytes=len(final_bytes))

        link = await self.assets.create_gated_link(final_path, password=metadata.job_id or payment.session_id or "")
        if link.fallback_cause:
            log.warning("gated_link_degraded", visibility=link.visibility.value, cause=link.fallback_cause)

        grant = None
        if payment.customer_email:
            grant = await self._grant_recipient(final_path, payment.customer_email, metadata.job_id)

        job = job.transition_to(JobStatus.FULFILLED, final_path=final_path)
        log.info(
            "fulfillment_completed",
            status=job.status.value,
            link_visibility=link.visibility.value,
            link_fallback_cause=link.fallback_cause,
            recipient_granted=grant.granted if grant else None,
        )

        return FulfillmentResult(
            job_id=metadata.job_id,
            final_image_path=final_path,
            secure_link=link.url,
            link_visibility=link.visibility,
            link_fallback_cause=link.fallback_cause,
            customer_email=payment.customer_email,
            recipient_grant=grant,
        )

    async def _grant_recipient(self, path: str, email: str, job_id: Optional[str]) -> RecipientGrant:
        """Non-fatal: the gated link already delivers the asset."""
        message = "Here is your virtually staged image"
        message += f" for job {job_id}." if job_id else "."

        grant = await self.assets.grant_recipient_access(path, email, message)
        if not grant.granted:
            logger.warning("recipient_grant_failed", path=path, email=email, error=grant.error)
        return grant

    # =========================================================================
    # RENDER VARIATION FINALIZE
    # =========================================================================

    async def finalize_variation(self, render_id: str, job_id: str) -> VariationResult:
        """Unwatermarked variation of an existing render, stored under the job folder."""
        log = logger.bind(job_id=job_id, render_id=render_id)

        result = await self.renderer.create_variation(
            render_id,
            add_watermark=False,
            wait_for_completion=True,
        )
        final_bytes = await self.renderer.download(result.result_image_url)

        final_path = job_identity.variation_final_path(job_id)
        await self.assets.upload(final_path, final_bytes, mode="overwrite", autorename=False, mute=True)
        download_url = await self.assets.ensure_shared_link(final_path)

        log.info("variation_finalized", final_path=final_path)
        return VariationResult(
            job_id=job_id,
            render_id=result.render_id or render_id,
            download_url=download_url,
            download_dropbox_path=final_path,
            vsai_result_url=result.result_image_url,
        )
