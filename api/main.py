"""
FastAPI application: read-only job status for the product layer, plus
the pipeline itself running in the same event loop.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, jobs, stats
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import PipelineException
from core.logging import setup_logging
from pipeline.runner import PipelineRunner, build_context
from schemas.api import ErrorResponse
import logging

setup_logging(settings)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Integration Sync Pipeline API",
    description="Job status and statistics for the multi-tenant integration sync pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

app.include_router(health.router)
app.include_router(jobs.router)
app.include_router(stats.router)


@app.exception_handler(PipelineException)
async def pipeline_exception_handler(request: Request, exc: PipelineException):
    logger.error(f"Unhandled pipeline error on {request.url.path}: {exc}")
    body = ErrorResponse(error=exc.message, detail=exc.to_dict())
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup_event():
    """Build the pipeline context and start every stage"""
    logger.info("Starting integration sync pipeline")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    context = build_context(settings)
    runner = PipelineRunner(context)
    runner.start()
    app.state.context = context
    app.state.runner = runner


@app.on_event("shutdown")
async def shutdown_event():
    """Stop polling, drain in-flight work and release connections"""
    logger.info("Shutting down integration sync pipeline")
    runner = getattr(app.state, "runner", None)
    if runner is not None:
        await runner.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Integration Sync Pipeline API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "jobs": "/jobs",
            "stats": "/stats"
        }
    }
