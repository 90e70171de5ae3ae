"""
RealtyLeadsAI Fulfillment Server
================================
FastAPI surface for the order fulfillment pipeline:
- Stripe webhook intake
- Order finalization trigger
- Health monitoring

pip install fastapi uvicorn pydantic structlog
"""

import os
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from config import Settings, configure_logging
from pipeline.errors import InvalidEventError, OrderNotFoundError, WebhookSignatureError
from pipeline.orchestrator import FulfillmentPipeline, build_pipeline
from schemas.orders import FinalizeResult, WebhookResult

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    database_connected: bool
    work_queue_connected: bool
    stale_sweep_running: bool


bearer_scheme = HTTPBearer(auto_error=False)


def require_service_role(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """Internal endpoints take the Supabase service-role key as a bearer token."""
    expected = request.app.state.pipeline.settings.supabase_service_role_key
    if not expected or credentials is None or not secrets.compare_digest(
        credentials.credentials.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("service_auth_rejected", path=request.url.path)
        raise HTTPException(
            status_code=401,
            detail="Invalid service credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(pipeline: Optional[FulfillmentPipeline] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no pipeline, the lifespan loads settings from the environment, opens
    the Postgres pool and wires the production pipeline. Passing a pipeline
    skips the database (used by the tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal pipeline, settings
        owns_database = pipeline is None

        if owns_database:
            settings = settings or Settings.from_env()
            configure_logging(settings)
            settings.validate_for_startup()

            from database import close_database, init_database
            await init_database(settings)
            pipeline = build_pipeline(settings)

        logger.info("server_starting", version=VERSION)
        await pipeline.start(run_sweep=owns_database)
        app.state.pipeline = pipeline
        app.state.owns_database = owns_database
        app.state.started_at = datetime.now(timezone.utc)

        yield

        logger.info("server_shutting_down")
        await pipeline.stop()
        if owns_database:
            await close_database()

    app = FastAPI(
        title="RealtyLeadsAI Fulfillment",
        description="Payment webhooks, lead acquisition hand-off and lead delivery",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        state = request.app.state
        components = await state.pipeline.health_check()

        database_connected = True
        if state.owns_database:
            from database import Database
            database_connected = await Database.ping()

        healthy = database_connected and components["work_queue"]
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            version=VERSION,
            uptime_seconds=(datetime.now(timezone.utc) - state.started_at).total_seconds(),
            database_connected=database_connected,
            work_queue_connected=components["work_queue"],
            stale_sweep_running=components["stale_sweep"],
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness probe"""
        components = await request.app.state.pipeline.health_check()
        return {"ready": components["started"] and components["work_queue"]}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # =========================================================================
    # WEBHOOK ENDPOINT
    # =========================================================================

    @app.post("/api/webhooks/stripe", response_model=WebhookResult)
    async def stripe_webhook(request: Request):
        """
        Stripe webhook handler.

        Non-2xx makes Stripe re-deliver, so only unrecoverable input gets a 4xx.
        """
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        gateway = request.app.state.pipeline.gateway

        try:
            return await gateway.process_webhook(payload, signature)
        except (WebhookSignatureError, InvalidEventError) as e:
            logger.warning("stripe_webhook_rejected", error=str(e))
            raise HTTPException(status_code=400, detail=str(e))
        except OrderNotFoundError as e:
            logger.warning("stripe_webhook_order_not_found", error=str(e))
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.error("stripe_webhook_failed", error=str(e), exc_info=True)
            raise HTTPException(status_code=500, detail="Webhook processing failed")

    # =========================================================================
    # ORDER ENDPOINTS
    # =========================================================================

    @app.post(
        "/api/orders/{order_id}/finalize",
        response_model=FinalizeResult,
        dependencies=[Depends(require_service_role)],
    )
    async def finalize_order(order_id: str, request: Request):
        finalizer = request.app.state.pipeline.finalizer
        try:
            return await finalizer.finalize(order_id)
        except OrderNotFoundError:
            raise HTTPException(status_code=404, detail="Order not found")
        except Exception as e:
            logger.error("finalize_failed", order_id=order_id, error=str(e), exc_info=True)
            raise HTTPException(status_code=500, detail="Finalization failed")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )
