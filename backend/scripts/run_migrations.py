"""Bring the StudyFlow schema up to date.

Container entrypoints run this before the API or the nightly sync so the
schedule tables exist. The database is probed first because a freshly started
Postgres container refuses connections for a few seconds.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from app.logging_config import configure_logging

LOGGER = logging.getLogger("studyflow.migrations")
URL_PLACEHOLDER = "%(STUDYFLOW_DATABASE_URL)s"
BACKEND_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_TIMEOUT = int(os.getenv("STUDYFLOW_DB_MIGRATION_TIMEOUT", "60"))
DEFAULT_POLL_INTERVAL = float(os.getenv("STUDYFLOW_DB_MIGRATION_POLL_INTERVAL", "3"))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the StudyFlow schema.")
    parser.add_argument("--revision", default=os.getenv("STUDYFLOW_DB_MIGRATION_REVISION", "head"))
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help="seconds to keep probing the database",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="seconds between probes",
    )
    parser.add_argument("--config", default=str(BACKEND_ROOT / "alembic.ini"))
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    # Resolve migrations relative to the backend, whatever the working directory.
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """Use an explicit ``sqlalchemy.url`` or fall back to ``STUDYFLOW_DATABASE_URL``."""
    configured = config.get_main_option("sqlalchemy.url")
    if configured and configured != URL_PLACEHOLDER:
        return configured
    url = os.getenv("STUDYFLOW_DATABASE_URL")
    if not url:
        raise RuntimeError("No database URL: set STUDYFLOW_DATABASE_URL or sqlalchemy.url.")
    config.set_main_option("sqlalchemy.url", url)
    return url


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    """Block until ``SELECT 1`` succeeds; raise ``RuntimeError`` once ``timeout`` runs out.

    Connection refusals are retried. Any other SQLAlchemy error (bad
    credentials, unknown dialect options) stops at once.
    """
    engine = create_engine(database_url, pool_pre_ping=True)
    deadline = time.monotonic() + timeout
    attempts = 0
    try:
        while True:
            attempts += 1
            try:
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
            except OperationalError as exc:
                failure: SQLAlchemyError = exc
                LOGGER.warning("Probe %d: database unavailable (%s)", attempts, exc)
            except SQLAlchemyError as exc:
                failure = exc
                LOGGER.error("Probe %d: unrecoverable database error (%s)", attempts, exc)
                break
            else:
                LOGGER.info("Database answered after %d probe(s)", attempts)
                return
            if time.monotonic() >= deadline:
                break
            time.sleep(poll_interval)
    finally:
        engine.dispose()
    raise RuntimeError(f"Database unavailable after {attempts} probe(s) within {timeout}s") from failure


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
) -> None:
    config = config or get_alembic_config(str(BACKEND_ROOT / "alembic.ini"))
    url = resolve_database_url(config)
    wait_for_database(url, timeout=timeout, poll_interval=poll_interval)
    head = ScriptDirectory.from_config(config).get_current_head()
    LOGGER.info("Upgrading schema to %s (latest revision %s)", revision, head)
    command.upgrade(config, revision)
    LOGGER.info("Schema upgrade to %s finished", revision)


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        run_migrations(
            args.revision,
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            config=get_alembic_config(args.config),
        )
    except Exception:  # noqa: BLE001
        LOGGER.exception("Schema upgrade failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
