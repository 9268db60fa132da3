import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.cache import keys
from app.cache.layer import CacheLayer
from app.core.config import get_settings
from app.core.errors import register_exception_handlers
from app.core.logging import configure_logging
from app.core.security import TokenService
from app.database import connect_with_retry, create_db_and_tables, engine
from app.routers import auth, health, tasks

settings = get_settings()
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_with_retry(settings.db_retry_attempts, settings.db_retry_delay)
    if settings.auto_create_tables:
        await create_db_and_tables()

    cache = CacheLayer(settings, reconnect_purge=keys.VOLATILE_PATTERNS)
    await cache.connect()
    app.state.cache = cache
    app.state.tokens = TokenService(settings, cache)

    logger.info("Server started (environment=%s, prefix=%s)", settings.environment, settings.api_prefix)
    yield

    await cache.close()
    await engine.dispose()
    logger.info("Server stopped")


app = FastAPI(
    title="Task Management API",
    description="Async task management API with JWT auth and a two-tier cache",
    swagger_ui_parameters={"displayRequestDuration": True},
    version=health.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000

    logger.info(
        "%s %s %s %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    if elapsed_ms > settings.slow_request_threshold_ms:
        logger.warning("Slow request: %s %s took %.0fms", request.method, request.url.path, elapsed_ms)
    return response


register_exception_handlers(app)

# Include routers
app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(auth.router, prefix=settings.api_prefix)
app.include_router(tasks.router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {
        "message": "Welcome to Task Management API",
        "docs": "/docs",
        "version": health.VERSION,
    }
