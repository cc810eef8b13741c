# src/ag_gateway/main.py
"""Main entry point for the Anti-Gravity trust gateway."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from ag_gateway.api.v1 import protocol_router
from ag_gateway.core.settings import settings
from ag_gateway.services.orchestrator import ProtocolOrchestrator, build_orchestrator

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Session, CSRF, rate-limit and purchase-reconciliation gateway",
    version=settings.app_version,
)

# CORS headers come from the orchestrator's origin policy.
app.include_router(protocol_router, prefix="/api")
app.state.orchestrator = build_orchestrator(settings)


@app.on_event("startup")
async def on_startup() -> None:
    if not settings.session_token_secret:
        logger.error("SESSION_TOKEN_SECRET is not set; session requests will fail")
    if settings.is_production and not settings.billing_webhook_public_key:
        logger.error("BILLING_WEBHOOK_PUBLIC_KEY is not set; notifications will be rejected")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    orchestrator: ProtocolOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.aclose()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok", "version": settings.app_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ag_gateway.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
