"""Expose the trainer billing FastAPI app."""

import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Callable, Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .migrations import run_database_migrations
from .routers import appointments_router, invoices_router, prepaid_router
from .services.invoice_reminders import (
    start_invoice_reminder_scheduler,
    stop_invoice_reminder_scheduler,
)
from .services.invoices import (
    start_monthly_invoice_scheduler,
    stop_monthly_invoice_scheduler,
)

LOGGER = logging.getLogger(__name__)

LOCALHOST_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1|0\.0\.0\.0)(:\d+)?$"

DEFAULT_ALLOWED_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
}


def _normalize_origin(origin: str) -> str | None:
    stripped = origin.strip()
    if not stripped:
        return None
    return stripped.rstrip("/")


def _read_allowed_origins(raw_origins: Iterable[str]) -> list[str]:
    normalized = {_normalize_origin(origin) for origin in raw_origins}
    return sorted({origin for origin in normalized if origin})


def _resolve_allowed_origins() -> list[str]:
    """Origins from ``BACKEND_ALLOWED_ORIGINS`` (comma or space separated)."""

    raw_value = os.getenv("BACKEND_ALLOWED_ORIGINS")
    if not raw_value:
        return _read_allowed_origins(DEFAULT_ALLOWED_ORIGINS)
    return _read_allowed_origins(
        origin for origin in re.split(r"[\s,]+", raw_value) if origin
    )


def _read_bool_env(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _maybe_start_job(env_flag: str, job_name: str, starter: Callable[[], None]) -> None:
    if not _read_bool_env(env_flag, True):
        LOGGER.info("%s disabled via %s", job_name, env_flag)
        return
    starter()


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_database_is_ready()
    start_background_jobs()
    try:
        yield
    finally:
        stop_background_jobs()


app = FastAPI(title="Trainer Billing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_allowed_origins(),
    allow_origin_regex=LOCALHOST_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(prepaid_router, prefix="/prepaid", tags=["prepaid"])
app.include_router(invoices_router, prefix="/invoices", tags=["invoices"])
app.include_router(appointments_router, prefix="/appointments", tags=["appointments"])


def ensure_database_is_ready() -> None:
    """Apply pending database migrations when the service starts."""

    if not _read_bool_env("RUN_MIGRATIONS_ON_STARTUP", True):
        LOGGER.info("Skipping database migrations (RUN_MIGRATIONS_ON_STARTUP disabled)")
        return
    LOGGER.info("Ensuring database schema is up to date before serving requests")
    run_database_migrations()


def start_background_jobs() -> None:
    """Start background tasks required by the service."""

    _maybe_start_job(
        env_flag="MONTHLY_INVOICE_SCHEDULER_ENABLED",
        job_name="monthly invoice scheduler",
        starter=start_monthly_invoice_scheduler,
    )
    _maybe_start_job(
        env_flag="INVOICE_REMINDER_SCHEDULER_ENABLED",
        job_name="invoice reminder scheduler",
        starter=start_invoice_reminder_scheduler,
    )


@app.get("/", tags=["health"])
def read_root() -> dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


def stop_background_jobs() -> None:
    """Ensure background tasks are stopped when the application shuts down."""

    stop_monthly_invoice_scheduler()
    stop_invoice_reminder_scheduler()
