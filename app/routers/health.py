import time

from fastapi import APIRouter, Response, status

from app.core.config import SettingsDep
from app.database import check_database
from app.dependencies import CacheDep
from app.models import get_utc_now
from app.schemas import CacheHealth, HealthStatus

router = APIRouter(tags=["health"])

STARTED_AT = time.monotonic()
VERSION = "1.0.0"


@router.get("/health", response_model=HealthStatus)
async def health_check(response: Response, cache: CacheDep, settings: SettingsDep):
    # A degraded cache is reported but does not make the service unhealthy
    database_ok = await check_database()
    redis_ok = await cache.ping()
    stats = cache.get_stats()
    if not database_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthStatus(
        status="healthy" if database_ok else "unhealthy",
        timestamp=get_utc_now(),
        uptime=round(time.monotonic() - STARTED_AT, 3),
        environment=settings.environment,
        version=VERSION,
        database="connected" if database_ok else "disconnected",
        cache=CacheHealth(
            connected=redis_ok,
            l1_size=stats["l1_size"],
            hit_rate=round(stats["hit_rate"], 4),
            errors=stats["errors"],
        ),
    )
