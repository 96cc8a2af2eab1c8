from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from reconciler.config import get_settings
from reconciler.dependencies import infra_path
from reconciler.logger import configure_logging, get_logger
from reconciler.routes import alerts, system, targets, tenants
from reconciler.services.auth import is_configured

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("app.startup", "Starting app", env=settings.app_env, version=settings.app_version)
    if not settings.auth_required:
        logger.warning("security.auth", "AUTH_REQUIRED is disabled; the admin API is unauthenticated")
    elif not is_configured(infra_path(settings, settings.auth_password_file)):
        logger.warning(
            "security.auth",
            "No operator password configured; run 'infra-reconciler set-password' before using the API",
        )
    if settings.rabbitmq_api_url and not settings.rabbitmq_admin_pass:
        logger.warning("security.defaults", "RABBITMQ_ADMIN_PASS is empty; RabbitMQ tenant calls will fail")
    yield
    logger.info("app.shutdown", "Shutting down app")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = None
    if request.client:
        client = request.client.host

    start = perf_counter()
    with logger.context(request_id=request_id):
        logger.info(
            "request.start",
            "Started",
            method=request.method,
            path=request.url.path,
            client=client,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (perf_counter() - start) * 1000
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration_ms = (perf_counter() - start) * 1000
        logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(targets.router)
app.include_router(alerts.router)
app.include_router(tenants.router)
