"""Health check endpoints router for monitoring service availability."""

from typing import Any

from fastapi import APIRouter, Depends
from starlette.responses import JSONResponse

from src.users.api.http.app_data import ApplicationDependencies
from src.users.api.http.deps import get_app_dependencies
from src.users.core.storage.cache_storage import RedisCacheStorage

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=None)
async def health(
    app_deps: ApplicationDependencies = Depends(get_app_dependencies),
) -> dict[str, Any] | JSONResponse:
    """Report database and cache health.

    Returns 503 when the database is down. A cache outage only degrades
    performance, so it is reported but keeps the status at 200.
    """
    executor = app_deps.executor

    db_healthy = await executor.run(app_deps.database_service.health_check)
    checks: dict[str, Any] = {
        "database": {
            "status": "healthy" if db_healthy else "unhealthy",
            "pool": app_deps.database_service.get_pool_status(),
        }
    }

    cache_healthy = await executor.run(app_deps.cache_storage.is_available)
    checks["cache"] = {
        "status": "healthy" if cache_healthy else "degraded",
        "type": "redis"
        if isinstance(app_deps.cache_storage, RedisCacheStorage)
        else "in-memory",
    }

    body = {"status": "healthy" if db_healthy else "unhealthy", "checks": checks}
    if not db_healthy:
        return JSONResponse(status_code=503, content=body)
    return body
