"""FastAPI application factory and setup."""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from src.users.api.http.app_data import ApplicationDependencies, build_dependencies
from src.users.api.http.routers.auth import router as auth_router
from src.users.api.http.routers.email_verify import router as email_verify_router
from src.users.api.http.routers.health import router as health_router
from src.users.api.http.routers.users import router as users_router
from src.users.api.utils.app_startup import configure_logging
from src.users.core.errors import TokenError, UsersError
from src.users.runtime.context import get_config

STATUS_BY_ERROR_CODE = {
    "not_found": 404,
    "conflict": 409,
    "validation_failed": 422,
    "permission_denied": 403,
    "authentication_failed": 401,
    "token_error": 401,
    "token_expired": 401,
    "token_invalid": 401,
    "resource_exhausted": 503,
    "store_unavailable": 503,
    "cache_unavailable": 503,
    "provider_rejected": 401,
    "provider_unavailable": 502,
    "delivery_failed": 502,
}


# --- Security middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Cache-Control", "no-store")
        if get_config().app.environment == "production":
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=31536000; includeSubDomains",
            )
        return response


# --- Request logging middleware ---
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    xff = request.headers.get("x-forwarded-for")
    client_ip = (
        xff.split(",")[0].strip()
        if xff
        else request.client.host
        if request.client
        else "unknown"
    )

    base_ctx = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client_ip": client_ip,
        "user_agent": request.headers.get("user-agent", "unknown"),
    }

    start = time.perf_counter()

    # Everything that logs within this block inherits base_ctx
    with logger.contextualize(**base_ctx):
        try:
            logger.info("request.start")
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start) * 1000
            logger.bind(
                status_code=response.status_code,
                duration_ms=round(duration_ms, 1),
            ).info("request.end")

            response.headers.setdefault("X-Request-ID", request_id)
            return response

        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.bind(
                status_code=500,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            ).exception("request.error")
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "detail": "Internal Server Error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )


# --- Error mapping ---
async def handle_users_error(request: Request, exc: UsersError) -> JSONResponse:
    status_code = STATUS_BY_ERROR_CODE.get(exc.code, 500)
    request_id = getattr(request.state, "request_id", "-")
    headers = {"X-Request-ID": request_id}
    if isinstance(exc, TokenError):
        headers["WWW-Authenticate"] = f'Bearer error="{exc.code}"'

    log = logger.bind(error_code=exc.code, status_code=status_code)
    if status_code >= 500:
        log.warning("request.failed: {}", exc.message)
    else:
        log.info("request.rejected: {}", exc.message)

    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message, "request_id": request_id},
        headers=headers,
    )


async def handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "-")
    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_failed",
            "detail": jsonable_errors(exc),
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def create_app(dependencies: ApplicationDependencies | None = None) -> FastAPI:
    """Build the application.

    When ``dependencies`` is given the app uses them as-is and leaves their
    lifecycle to the caller; otherwise they are built from the loaded
    configuration at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = dependencies is None
        if owned:
            config = get_config()
            configure_logging(config)
            logger.info(
                "Starting up application in {} environment", config.app.environment
            )
            deps = build_dependencies(config)
            if config.database.is_sqlite:
                deps.database_service.create_all()
        else:
            deps = dependencies
        app.state.app_dependencies = deps
        try:
            yield
        finally:
            logger.info("Shutting down application")
            if owned:
                deps.close()

    is_production = get_config().app.environment == "production"
    app = FastAPI(
        title="users-identity-service",
        lifespan=lifespan,
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
    )
    if dependencies is not None:
        app.state.app_dependencies = dependencies

    app.add_middleware(SecurityHeadersMiddleware)
    app.middleware("http")(log_requests)

    app.add_exception_handler(UsersError, handle_users_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(email_verify_router)
    app.include_router(health_router)
    return app


def run() -> None:
    import uvicorn

    config = get_config()
    configure_logging(config)
    uvicorn.run(
        create_app(),
        host=config.app.host,
        port=config.app.port,
        access_log=False,  # We handle access logging in middleware
    )


if __name__ == "__main__":
    run()
