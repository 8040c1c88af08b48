"""Upgrade the calendar schema, check it landed, and optionally seed the unit catalog.

Deploys call this before starting the API. After an upgrade to ``head`` the
database revision and the table set are compared with what the code expects,
so a half-applied migration fails the deploy instead of the first request.
``--seed-units`` loads a JSON list of learning units into ``learning_units``,
replacing the stored units of every course the file mentions.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from pydantic import TypeAdapter
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from study_calendar.catalog import write_course_units
from study_calendar.db import models  # noqa: F401
from study_calendar.db.base import Base
from study_calendar.models import LearningUnit

LOGGER = logging.getLogger("study_calendar.migrations")
URL_PLACEHOLDER = "%(STUDY_CALENDAR_DATABASE_URL)s"
DEFAULT_TIMEOUT = int(os.getenv("STUDY_CALENDAR_MIGRATION_TIMEOUT", "60"))
DEFAULT_POLL_INTERVAL = float(os.getenv("STUDY_CALENDAR_MIGRATION_POLL_INTERVAL", "3"))
SCRIPT_DIR = Path(__file__).resolve().parent
BACKEND_ROOT = SCRIPT_DIR.parent

_UNIT_LIST = TypeAdapter(List[LearningUnit])


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the calendar schema and seed learning units.")
    parser.add_argument(
        "--revision",
        default=os.getenv("STUDY_CALENDAR_MIGRATION_REVISION", "head"),
        help="Revision to upgrade to (default: head). Only head upgrades are verified.",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help=f"Seconds to wait for the database (default: {DEFAULT_TIMEOUT}).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help=f"Seconds between connection attempts (default: {DEFAULT_POLL_INTERVAL}).",
    )
    parser.add_argument(
        "--config",
        default=str(BACKEND_ROOT / "alembic.ini"),
        help="Path to alembic.ini.",
    )
    parser.add_argument(
        "--seed-units",
        type=Path,
        default=None,
        help="JSON file holding a list of learning units to load after the upgrade.",
    )
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url and url != URL_PLACEHOLDER:
        return url
    env_url = os.getenv("STUDY_CALENDAR_DATABASE_URL")
    if not env_url:
        raise RuntimeError("STUDY_CALENDAR_DATABASE_URL must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", env_url)
    return env_url


def _ping(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    """Retry ``SELECT 1`` on connection errors until ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    attempt = 0
    try:
        while True:
            attempt += 1
            try:
                _ping(engine)
            except OperationalError as exc:
                if time.monotonic() >= deadline:
                    raise RuntimeError(f"Database did not answer after {attempt} attempt(s).") from exc
                LOGGER.warning("Database not ready (attempt %d): %s", attempt, exc)
                time.sleep(poll_interval)
                continue
            LOGGER.info("Database answered after %d attempt(s).", attempt)
            return
    finally:
        engine.dispose()


def verify_schema(config: Config, database_url: str) -> str:
    """Check the database sits at the newest revision and holds every calendar table.

    Returns the current revision; raises ``RuntimeError`` naming each mismatch.
    """
    head = ScriptDirectory.from_config(config).get_current_head()
    engine = create_engine(database_url, future=True)
    try:
        with engine.connect() as connection:
            current = MigrationContext.configure(connection).get_current_revision()
            present = set(inspect(connection).get_table_names())
    finally:
        engine.dispose()

    problems: List[str] = []
    if current != head:
        problems.append(f"database is at revision {current or 'none'}, expected {head}")
    missing = sorted(set(Base.metadata.tables) - present)
    if missing:
        problems.append("missing tables: " + ", ".join(missing))
    if problems:
        raise RuntimeError("Calendar schema check failed: " + "; ".join(problems))
    LOGGER.info("Calendar schema verified at revision %s.", current)
    return current


def load_seed_units(path: Path) -> List[LearningUnit]:
    return _UNIT_LIST.validate_json(path.read_bytes())


def seed_learning_units(database_url: str, units: Sequence[LearningUnit]) -> Dict[str, int]:
    """Replace the stored units of each course in ``units``; returns rows written per course."""
    by_course: Dict[str, List[LearningUnit]] = defaultdict(list)
    for unit in units:
        by_course[unit.course_id].append(unit)

    engine = create_engine(database_url, future=True)
    try:
        with Session(engine) as session, session.begin():
            counts = {
                course_id: write_course_units(session, course_id, course_units)
                for course_id, course_units in sorted(by_course.items())
            }
    finally:
        engine.dispose()
    for course_id, count in counts.items():
        LOGGER.info("Seeded %d learning unit(s) for course %s.", count, course_id)
    return counts


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
    seed_units: Optional[Path] = None,
) -> Dict[str, int]:
    config = config or get_alembic_config(str(BACKEND_ROOT / "alembic.ini"))
    database_url = resolve_database_url(config)
    # Parse the seed file up front so a bad file fails before the schema changes.
    units = load_seed_units(seed_units) if seed_units is not None else []
    LOGGER.info("Upgrading calendar schema to %s (timeout=%ss poll=%ss)", revision, timeout, poll_interval)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    command.upgrade(config, revision)
    if revision == "head":
        verify_schema(config, database_url)
    seeded = seed_learning_units(database_url, units) if units else {}
    LOGGER.info("Migrations complete.")
    return seeded


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("STUDY_CALENDAR_MIGRATION_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    try:
        config = get_alembic_config(args.config)
        run_migrations(
            args.revision,
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            config=config,
            seed_units=args.seed_units,
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Migration run failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
