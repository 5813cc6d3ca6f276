"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, query, cube
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import CubeException, FactTableValidationException
from core.logging import setup_logging
from schemas.api import ErrorResponse
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Cube Backend API",
    description="Fact table validation, cube construction and query store",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(query.router)
app.include_router(cube.router)


@app.exception_handler(CubeException)
async def cube_exception_handler(request: Request, exc: CubeException):
    """Structured errors leave the API with their own status and payload"""
    if exc.status >= 500:
        logger.error(f"{exc}")
    else:
        logger.warning(f"{exc}")

    body = ErrorResponse(
        error=exc.__class__.__name__,
        kind=exc.kind.value if isinstance(exc, FactTableValidationException) else None,
        message=exc.message,
        headers=getattr(exc, "headers", None),
        data=getattr(exc, "data", None)
    )
    return JSONResponse(status_code=exc.status, content=body.model_dump(mode="json", exclude_none=True))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Cube Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    logger.info(f"Supported locales: {settings.SUPPORTED_LOCALES}")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Cube Backend API")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Cube Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "query": "/datasets/{dataset_id}/revisions/{revision_id}/query",
            "validate": "/datasets/{dataset_id}/fact-table/validate",
            "build": "/datasets/{dataset_id}/revisions/{revision_id}/build"
        }
    }
