# api/server.py
# ============================================================================
# VIRTUAL STAGING SERVICE — FASTAPI SERVER
# ============================================================================
# Staging, checkout and Stripe webhook endpoints plus Virtual Staging AI
# pass-through endpoints
# ============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional
from datetime import datetime

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from api.dependencies import ServiceContainer, build_container, get_container
from pipeline.errors import StagingError, ValidationError
from schemas.staging import JobMetadata
from settings import Settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("VirtualStaging.Server")

VERSION = "1.0.0"
START_TIME = datetime.utcnow()


# ============================================================================
# REQUEST MODELS
# ============================================================================
# Loosely typed: field checks live in the orchestrators and all map to
# the same 400 {error} shape.

class StageRequest(BaseModel):
    image_base64: Optional[Any] = None
    room_type: Optional[Any] = None
    style: Optional[Any] = None


class CheckoutRequest(BaseModel):
    amount: Optional[Any] = None
    currency: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_email: Optional[str] = None


class FinalizeRequest(BaseModel):
    render_id: Optional[str] = None
    job_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# ERROR RESPONSES
# ============================================================================

def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def normalise_error_payload(payload: Any, fallback_message: str = "VSAI request failed") -> Any:
    """Upstream error body as-is when it is JSON, otherwise wrapped in {error}."""
    if isinstance(payload, (dict, list)):
        return payload
    if payload is None:
        return {"error": fallback_message}
    return {"error": fallback_message, "details": payload}


async def staging_error_handler(request: Request, exc: StagingError) -> JSONResponse:
    if exc.exposes_message:
        logger.warning(f"{request.url.path} rejected ({exc.status_code}): {exc.message}")
        return error_response(exc.status_code, exc.message)

    logger.error(
        f"{request.url.path} failed: {type(exc).__name__}: {exc.message} | details={exc.details}",
        exc_info=exc,
    )
    return error_response(exc.status_code, exc.public_message)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"{request.url.path} invalid request body: {exc.errors()}")
    return error_response(400, "Invalid request")


def unexpected_error(path: str, exc: Exception, message: str) -> JSONResponse:
    logger.error(f"{path} unexpected error: {exc}", exc_info=exc)
    return error_response(500, message)


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting Virtual Staging service...")

    owns_container = getattr(app.state, "container", None) is None
    if owns_container:
        app.state.container = build_container(Settings.from_env())

    yield

    logger.info("Shutting down Virtual Staging service...")
    if owns_container:
        await app.state.container.aclose()


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Virtual Staging Service",
        description="Watermarked previews, Stripe checkout and gated delivery of staged rooms",
        version=VERSION,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Stripe-Signature"],
    )
    app.add_exception_handler(StagingError, staging_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    register_routes(app)
    return app


def register_routes(app: FastAPI):

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (datetime.utcnow() - START_TIME).total_seconds()
        return HealthResponse(status="healthy", version=VERSION, uptime_seconds=uptime)

    # ------------------------------------------------------------------------
    # Staging pipeline
    # ------------------------------------------------------------------------

    @app.post("/api/stage")
    async def stage(body: StageRequest, container: ServiceContainer = Depends(get_container)):
        """Submit a room photo; returns the watermarked preview and the checkout join key."""
        try:
            outcome = await container.staging.stage(body.image_base64, body.room_type, body.style)
        except StagingError:
            raise
        except Exception as e:
            return unexpected_error("/api/stage", e, "Server error")
        return outcome.to_response()

    @app.post("/api/checkout")
    async def checkout(body: CheckoutRequest, container: ServiceContainer = Depends(get_container)):
        """Create a Stripe Checkout session carrying the staging metadata."""
        meta = body.metadata
        if not meta.get("job_id") or not meta.get("dropbox_path") or not meta.get("image_url"):
            raise ValidationError("Missing staging metadata")

        metadata = JobMetadata(
            job_id=str(meta["job_id"]),
            dropbox_path=str(meta["dropbox_path"]),
            image_url=str(meta["image_url"]),
            room_type=str(meta.get("room_type") or ""),
            style=str(meta.get("style") or ""),
        )

        try:
            result = await container.payment_gate.create_checkout(
                body.amount,
                body.currency,
                metadata,
                customer_email=body.customer_email,
            )
        except StagingError:
            raise
        except Exception as e:
            return unexpected_error("/api/checkout", e, "Stripe checkout failed")
        return {"url": result.checkout_url}

    @app.post("/api/stripe-webhook")
    async def stripe_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
        """Stripe callback; fulfills checkout.session.completed, acknowledges the rest."""
        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        try:
            return await container.fulfillment.process_webhook(payload, signature)
        except StagingError:
            raise
        except Exception as e:
            return unexpected_error("/api/stripe-webhook", e, "Webhook processing failed")

    @app.post("/api/finalize")
    async def finalize(body: FinalizeRequest, container: ServiceContainer = Depends(get_container)):
        """Unwatermarked variation of an existing render, stored in Dropbox."""
        if not body.render_id or not body.job_id:
            raise ValidationError("Missing render_id or job_id")

        container.settings.require_vsai_api_key()
        container.settings.require_dropbox()

        try:
            result = await container.fulfillment.finalize_variation(body.render_id, body.job_id)
        except StagingError as e:
            if e.exposes_message:
                raise
            logger.error(f"/api/finalize failed: {e.message} | details={e.details}", exc_info=e)
            return error_response(500, "Failed to finalize render")
        except Exception as e:
            return unexpected_error("/api/finalize", e, "Failed to finalize render")
        return result.model_dump()

    # ------------------------------------------------------------------------
    # Virtual Staging AI pass-through
    # ------------------------------------------------------------------------

    async def proxy(
        container: ServiceContainer,
        method: str,
        path: str,
        label: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> JSONResponse:
        try:
            response = await container.render_client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            logger.error(f"VSAI {label} error: {e}")
            return error_response(502, "Failed to contact Virtual Staging API")

        if not response.ok:
            return JSONResponse(status_code=response.status, content=normalise_error_payload(response.data))
        content = response.data if response.data is not None else {}
        return JSONResponse(status_code=response.status, content=content)

    def render_id_from(request: Request) -> Optional[str]:
        return request.query_params.get("render_id") or request.query_params.get("renderId")

    async def json_object_body(request: Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @app.get("/api/ping")
    async def ping(container: ServiceContainer = Depends(get_container)):
        container.settings.require_vsai_api_key()
        return await proxy(container, "GET", "/ping", "ping")

    @app.get("/api/render")
    async def render_lookup(request: Request, container: ServiceContainer = Depends(get_container)):
        container.settings.require_vsai_api_key()
        render_id = render_id_from(request)
        if not render_id:
            raise ValidationError("Missing render_id")
        return await proxy(container, "GET", "/render", "render lookup", params={"render_id": render_id})

    @app.post("/api/render-create")
    async def render_create(request: Request, container: ServiceContainer = Depends(get_container)):
        container.settings.require_vsai_api_key()
        payload = await json_object_body(request)
        return await proxy(container, "POST", "/render/create", "render/create", json=payload)

    @app.post("/api/render-create-variation")
    async def render_create_variation(request: Request, container: ServiceContainer = Depends(get_container)):
        container.settings.require_vsai_api_key()
        render_id = render_id_from(request)
        if not render_id:
            raise ValidationError("Missing render_id")
        payload = await json_object_body(request)
        return await proxy(
            container,
            "POST",
            "/render/create-variation",
            "render variation",
            params={"render_id": render_id},
            json=payload,
        )


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENV", "development") == "development",
    )
