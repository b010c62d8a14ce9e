"""Bring the billing schema up to date with Alembic before the API starts."""

from __future__ import annotations

import errno
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine.reflection import Inspector

from .database import SQLALCHEMY_DATABASE_URL

LOGGER = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).resolve().parent.parent
LOCK_FILENAME = ".alembic-migration.lock"
LOCK_RETRY_DELAY = 0.25
LOCK_TIMEOUT_ENV = "ALEMBIC_MIGRATION_LOCK_TIMEOUT"
DEFAULT_LOCK_TIMEOUT = 30.0

if os.name == "posix":  # pragma: no cover - platform specific
    import fcntl
else:  # pragma: no cover - platform specific
    import msvcrt


def _read_lock_timeout() -> float:
    raw = os.getenv(LOCK_TIMEOUT_ENV)
    if not raw:
        return DEFAULT_LOCK_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r", LOCK_TIMEOUT_ENV, raw)
        return DEFAULT_LOCK_TIMEOUT
    return value if value > 0 else DEFAULT_LOCK_TIMEOUT


class MigrationLock:
    """Exclusive lock file so concurrent workers do not migrate at once."""

    def __init__(self, path: Path, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        self._handle = None

    def __enter__(self) -> "MigrationLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("a+")
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                self._lock()
                LOGGER.debug("Acquired migration lock %s", self.path)
                return self
            except OSError as error:
                if not self._held_elsewhere(error):
                    self._handle.close()
                    raise
                if time.monotonic() >= deadline:
                    self._handle.close()
                    raise TimeoutError("Timed out waiting for the migration lock") from error
                time.sleep(LOCK_RETRY_DELAY)

    def __exit__(self, *exc_info) -> None:
        try:
            self._unlock()
        except OSError:  # pragma: no cover - lock already gone
            LOGGER.debug("Migration lock %s was already released", self.path)
        finally:
            self._handle.close()

    def _lock(self) -> None:
        if os.name == "posix":  # pragma: no cover - platform specific
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        else:  # pragma: no cover - platform specific
            msvcrt.locking(self._handle.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(self) -> None:
        if os.name == "posix":  # pragma: no cover - platform specific
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        else:  # pragma: no cover - platform specific
            msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)

    @staticmethod
    def _held_elsewhere(error: OSError) -> bool:
        if isinstance(error, BlockingIOError):
            return True
        if error.errno in {errno.EACCES, errno.EAGAIN, errno.EBUSY}:
            return True
        # Windows lock and sharing violations
        return getattr(error, "winerror", None) in {32, 33}


def _has_column(inspector: Inspector, table: str, column: str) -> bool:
    return inspector.has_table(table) and column in {
        item["name"] for item in inspector.get_columns(table)
    }


def _has_index(inspector: Inspector, table: str, index: str) -> bool:
    return inspector.has_table(table) and index in {
        item["name"] for item in inspector.get_indexes(table)
    }


# Newest first: the first revision whose check passes is stamped.
KNOWN_SCHEMAS: Sequence[tuple[str, Callable[[Inspector], bool]]] = (
    (
        "20261019_0002_invoice_reminders",
        lambda inspector: (
            inspector.has_table("invoice_reminder_logs")
            and _has_column(inspector, "client_profiles", "invoice_alerts_enabled")
            and _has_column(inspector, "trainer_settings", "invoice_reminder_overdue_days")
        ),
    ),
    (
        "20261019_0001_billing_schema",
        lambda inspector: (
            inspector.has_table("prepaid_transactions")
            and _has_column(inspector, "client_profiles", "version")
            and _has_index(inspector, "invoices", "invoices_open_top_up_key")
        ),
    ),
)


@dataclass
class SchemaState:
    versioned: bool
    tables: list[str] = field(default_factory=list)
    recognised_revision: Optional[str] = None

    @classmethod
    def inspect(cls, url: str) -> "SchemaState":
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        engine = create_engine(url, connect_args=connect_args)
        try:
            inspector = inspect(engine)
            state = cls(
                versioned=inspector.has_table("alembic_version"),
                tables=[t for t in inspector.get_table_names() if t != "alembic_version"],
            )
            if not state.versioned and state.tables:
                state.recognised_revision = next(
                    (revision for revision, check in KNOWN_SCHEMAS if check(inspector)),
                    None,
                )
            return state
        finally:
            engine.dispose()


def alembic_config(database_url: str) -> Config:
    config = Config(str(BACKEND_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", database_url)
    return config


def run_database_migrations(database_url: Optional[str] = None) -> None:
    """Upgrade the database to the latest revision.

    A database created outside Alembic (for example by ``create_all``) is
    stamped with the revision its tables match before upgrading, so the
    billing tables are never created twice.
    """

    url = database_url or os.getenv("DATABASE_URL") or SQLALCHEMY_DATABASE_URL
    if str(BACKEND_DIR) not in sys.path:
        sys.path.insert(0, str(BACKEND_DIR))
    config = alembic_config(url)
    head = ScriptDirectory.from_config(config).get_current_head()
    LOGGER.info("Running database migrations at %s", url)

    with MigrationLock(BACKEND_DIR / LOCK_FILENAME, _read_lock_timeout()):
        state = SchemaState.inspect(url)

        if not state.versioned and state.recognised_revision:
            LOGGER.info(
                "Existing tables match revision %s; stamping before upgrade",
                state.recognised_revision,
            )
            command.stamp(config, state.recognised_revision)
            if state.recognised_revision == head:
                return
        elif not state.versioned and state.tables:
            LOGGER.warning(
                "Unversioned tables %s found; running the full upgrade", ", ".join(state.tables)
            )

        command.upgrade(config, "head")
