"""
FastAPI application entry point for the autonomous action governance service.

Multi-tenant enforcement is enabled via TenantContextMiddleware.
All /api/ routes require a valid JWT with tenant context.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from autopilot import __version__
from autopilot.api.dependencies import close_action_executor
from autopilot.api.routes import automation_settings
from autopilot.api.routes import autonomous_actions
from autopilot.api.routes import health
from autopilot.api.routes import pending_approvals
from autopilot.api.routes import proposals
from autopilot.config.automation_defaults import get_automation_defaults_loader
from autopilot.platform.tenant_context import TenantContextMiddleware

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting autopilot governance API")

    missing_vars = [var for var in ("AUTH_JWT_SECRET", "DATABASE_URL") if not os.getenv(var)]
    if missing_vars:
        logger.warning(
            f"Service not fully configured (missing: {missing_vars}). "
            "Protected endpoints will return 503."
        )
    if not os.getenv("ACTION_EXECUTOR_URL"):
        logger.warning("ACTION_EXECUTOR_URL not set; approved actions will be recorded but not executed")

    # Load defaults eagerly so a malformed YAML fails at startup
    get_automation_defaults_loader()

    yield

    await close_action_executor()
    logger.info("Shutting down autopilot governance API")


app = FastAPI(
    title="Autopilot Governance API",
    description="Guardrails, approval queue and audit trail for AI-proposed storefront actions",
    version=__version__,
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# CRITICAL: Add tenant context middleware
tenant_middleware = TenantContextMiddleware()
app.middleware("http")(tenant_middleware)

# Include health route (bypasses authentication)
app.include_router(health.router)

app.include_router(automation_settings.router)
app.include_router(pending_approvals.router)
app.include_router(autonomous_actions.router)
app.include_router(proposals.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    tenant_id = "unknown"
    if hasattr(request.state, "tenant_context"):
        tenant_id = request.state.tenant_context.tenant_id

    logger.error(
        "Unhandled exception",
        extra={
            "tenant_id": tenant_id,
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
