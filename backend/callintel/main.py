# backend/callintel/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import uvicorn
import time
import logging

from callintel.db.database import init_db, check_db_connection, AsyncSessionLocal
from callintel.api.conversations import router as conversations_router
from callintel.api.internal import router as internal_router
from callintel.api.webhooks import router as webhooks_router
from callintel.core.config import settings
from callintel.core.exceptions import ConversationPipelineError
from callintel.security.error_handlers import error_handler
from callintel.services.pipeline import build_pipeline

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Silence noisy third-party loggers
logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("🚀 Starting up call conversation pipeline...")

    try:
        await init_db()
        logger.info("✅ Database initialized successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise

    pipeline = build_pipeline(AsyncSessionLocal, settings)
    app.state.pipeline = pipeline
    await pipeline.start()

    logger.info("✅ Application startup complete")
    yield

    # Shutdown
    logger.info("🛑 Shutting down application...")
    try:
        await pipeline.stop()
        logger.info("✅ Pipeline workers stopped")
    except Exception as e:
        logger.error(f"⚠️  Error stopping pipeline workers: {e}")

    logger.info("✅ Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.API_VERSION,
    description="Call transcription, insight extraction, review and analytics for restaurants",
    lifespan=lifespan
)

# CORS middleware
logger.info(f"🌐 CORS origins: {settings.CORS_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log request method, path, status and timing"""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    if request.url.path == "/health":
        logger.debug(f"✅ Health check: {response.status_code} ({process_time:.3f}s)")
    else:
        logger.info(
            f"📨 {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)"
        )
    return response


# Exception handlers
@app.exception_handler(ConversationPipelineError)
async def pipeline_exception_handler(request: Request, exc: ConversationPipelineError):
    return await error_handler.handle_pipeline_error(request, exc)


@app.exception_handler(StarletteHTTPException)
async def secure_http_exception_handler(request: Request, exc: StarletteHTTPException):
    return await error_handler.handle_http_exception(request, exc)


@app.exception_handler(RequestValidationError)
async def secure_validation_exception_handler(request: Request, exc: RequestValidationError):
    return await error_handler.handle_validation_error(request, exc)


@app.exception_handler(Exception)
async def secure_general_exception_handler(request: Request, exc: Exception):
    return await error_handler.handle_internal_error(request, exc)


# Health endpoint
@app.get("/health")
async def health_check():
    """Liveness plus database connectivity"""
    database_ok = await check_db_connection()
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": "callintel",
        "version": settings.API_VERSION,
        "database": "connected" if database_ok else "unavailable",
        "timestamp": time.time()
    }


app.include_router(conversations_router, prefix="/api", tags=["Conversations"])
app.include_router(internal_router, prefix="/api", tags=["Pipeline Operations"])
app.include_router(webhooks_router, prefix="/api", tags=["Webhooks"])


if __name__ == "__main__":
    logger.info("🚀 Starting server directly...")
    uvicorn.run(
        "callintel.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level="info"
    )
