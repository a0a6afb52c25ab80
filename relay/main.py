"""Main FastAPI application entry point for the WhatsApp conversation relay."""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from relay.config import settings
from relay.handlers.webhook import limiter
from relay.handlers.webhook import router as webhook_router
from relay.utils.logger import log

# Initialize Sentry if enabled
if settings.enable_sentry and settings.sentry_dsn:
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=1.0 if settings.is_development else 0.1,
    )
    log.info("Sentry initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    log.info("=" * 60)
    log.info("Starting WhatsApp conversation relay")
    log.info(f"Environment: {settings.environment}")
    log.info(f"History backend: {settings.history_store_backend}")
    log.info(f"Generation backend: {settings.backend_url}")
    log.info("=" * 60)

    os.makedirs("logs", exist_ok=True)

    yield

    # Shutdown
    log.info("Shutting down WhatsApp conversation relay")


# Create FastAPI app
app = FastAPI(
    title="WhatsApp Conversation Relay",
    description="Relays WhatsApp and web chat messages to a reply-generation backend",
    version="1.0.0",
    lifespan=lifespan,
)

# Store config and limiter in app state
app.state.config = settings
app.state.limiter = limiter

# Add rate limit exceeded handler
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhook_router, tags=["webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "WhatsApp Conversation Relay",
        "version": "1.0.0",
        "status": "running",
        "environment": settings.environment,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.hot_reload and settings.is_development,
        log_level=settings.log_level.lower(),
    )
