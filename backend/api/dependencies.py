# api/dependencies.py
# ============================================================================
# VIRTUAL STAGING SERVICE — SERVICE WIRING
# ============================================================================
# Builds the clients and orchestrators once per process and hands them to
# the FastAPI app. Tests construct their own container with fakes.
# ============================================================================

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import stripe
from fastapi import Request

from pipeline.fulfillment import FulfillmentOrchestrator
from pipeline.payment_gate import PaymentGate
from pipeline.staging import StagingOrchestrator
from services.render_client import VirtualStagingClient
from settings import Settings
from storage.dropbox_storage import DropboxAssetStore, create_dropbox_client

logger = logging.getLogger("VirtualStaging.Dependencies")


@dataclass
class ServiceContainer:
    settings: Settings
    render_client: VirtualStagingClient
    asset_store: DropboxAssetStore
    payment_gate: PaymentGate
    staging: StagingOrchestrator
    fulfillment: FulfillmentOrchestrator

    async def aclose(self):
        await self.render_client.aclose()


def build_container(
    settings: Settings,
    dropbox_client=None,
    http_client: Optional[httpx.AsyncClient] = None,
    stripe_client=stripe,
) -> ServiceContainer:
    """Wire every service from ``settings``; explicit clients override the defaults."""
    if dropbox_client is None and settings.has_dropbox_credentials:
        dropbox_client = create_dropbox_client(settings)
    if dropbox_client is None:
        logger.warning("Dropbox credentials not set - storage calls will fail")

    render_client = VirtualStagingClient(
        api_key=settings.vsai_api_key,
        base_url=settings.vsai_base_url,
        timeout_seconds=settings.vsai_timeout_seconds,
        http_client=http_client,
    )
    asset_store = DropboxAssetStore(dropbox_client)
    payment_gate = PaymentGate(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        site_url=settings.site_url,
        product_name=settings.product_name,
        stripe_client=stripe_client,
    )

    return ServiceContainer(
        settings=settings,
        render_client=render_client,
        asset_store=asset_store,
        payment_gate=payment_gate,
        staging=StagingOrchestrator(asset_store, render_client),
        fulfillment=FulfillmentOrchestrator(asset_store, render_client, payment_gate),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
