"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, error envelopes and the API routes.
"""

import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hudlab.config import settings
from hudlab.routers import auth, deals, notifications, nuvemshop_sync, partners, webhooks
from hudlab.utils.logger import bind_request_context, clear_request_context, configure_logging
from hudlab.utils.swr_cache import response_cache

# Configure logging first
configure_logging()
logger = structlog.get_logger()

app = FastAPI(
    title="HudLab Ops Backend",
    description="ActiveCampaign deal sync, Nuvemshop webhooks and partner management for the HudLab dashboard",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Tag every log line emitted while serving a request with its id and route."""
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    bind_request_context(request_id=request_id, method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error as {"error": message, ...extra}."""
    if isinstance(exc.detail, dict):
        content = {"error": exc.detail.get("message", "Request failed")}
        content.update({k: v for k, v in exc.detail.items() if k != "message"})
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


app.include_router(auth.router)
app.include_router(deals.router)  # Cached deals and sync status
app.include_router(deals.cron_router)  # Scheduled backfill
app.include_router(deals.admin_router)  # Sync lock reset
app.include_router(webhooks.router)  # ActiveCampaign + Nuvemshop webhooks, retries
app.include_router(nuvemshop_sync.router)  # Bulk Nuvemshop reconciliation
app.include_router(nuvemshop_sync.cron_router)
app.include_router(partners.router)
app.include_router(notifications.router)


@app.on_event("startup")
async def startup_event():
    logger.info(
        "HudLab ops backend started",
        environment=settings.app_environment,
        slack_alerts=settings.slack_alerts_enabled,
    )


@app.on_event("shutdown")
async def shutdown_event():
    await response_cache.drain()
    logger.info("HudLab ops backend shutting down")


@app.get("/")
async def root():
    """Root endpoint - also serves as a simple health check."""
    return {
        "status": "healthy",
        "service": "HudLab Ops Backend",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    return {"status": "healthy", "environment": settings.app_environment}


@app.get("/healthz")
async def healthz():
    """Alternative health check endpoint (Kubernetes-style)."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("hudlab.main:app", host="0.0.0.0", port=8000, reload=True)
