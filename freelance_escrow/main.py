from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from freelance_escrow import db
from freelance_escrow.config import AppInfo, Settings, get_settings
from freelance_escrow.core.logging import setup_logging
from freelance_escrow.core.runtime_state import set_scheduler_active
import freelance_escrow.models  # noqa: F401  registers the tables
from freelance_escrow.routers import get_api_router
from freelance_escrow.services.cron import (
    auto_release_once,
    dispatch_outbox_job,
    heartbeat_scheduler_lock,
    mark_overdue_once,
)
from freelance_escrow.services.scheduler_lock import release_scheduler_lock, try_acquire_scheduler_lock
from freelance_escrow.utils.errors import EscrowDomainError, error_response

logger = logging.getLogger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_gateway_config(settings: Settings) -> None:
    """Fail fast when the Stripe gateway is selected without its secrets."""

    if settings.PAYMENT_GATEWAY != "stripe":
        if settings.app_env.lower() not in ALLOWED_CREATE_ENV:
            logger.warning("Sandbox payment gateway active outside dev", extra={"env": settings.app_env})
        return
    if not settings.STRIPE_SECRET_KEY:
        raise RuntimeError("PAYMENT_GATEWAY=stripe requires STRIPE_SECRET_KEY.")
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET is not configured; webhook funding confirmations will be rejected.",
            extra={"env": settings.app_env},
        )


def _start_scheduler(settings: Settings) -> AsyncIOScheduler:
    sched = AsyncIOScheduler()
    sched.start()
    sched.add_job(
        auto_release_once,
        "interval",
        minutes=settings.AUTO_RELEASE_INTERVAL_MINUTES,
        id="auto-release",
        replace_existing=True,
        max_instances=1,
    )
    sched.add_job(
        mark_overdue_once,
        "interval",
        minutes=settings.OVERDUE_SWEEP_INTERVAL_MINUTES,
        id="payment-overdue",
        replace_existing=True,
        max_instances=1,
    )
    sched.add_job(
        dispatch_outbox_job,
        "interval",
        seconds=settings.OUTBOX_DISPATCH_INTERVAL_SECONDS,
        id="outbox-dispatch",
        replace_existing=True,
        max_instances=1,
    )
    sched.add_job(
        heartbeat_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    return sched


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, env=settings.app_env)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_gateway_config(settings)

    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    # Enable SCHEDULER_ENABLED on one runner only; the DB lock guards against mistakes.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler(settings)
            set_scheduler_active(True)
            logger.info(
                "Escrow sweeps scheduled",
                extra={
                    "auto_release_minutes": settings.AUTO_RELEASE_INTERVAL_MINUTES,
                    "grace_days": settings.AUTO_RELEASE_GRACE_DAYS,
                },
            )
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(EscrowDomainError)
async def escrow_error_handler(request: Request, exc: EscrowDomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("Escrow gateway failure", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        "VALIDATION_ERROR",
        "Request payload is invalid.",
        {"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
    )
    return JSONResponse(status_code=422, content=payload)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
