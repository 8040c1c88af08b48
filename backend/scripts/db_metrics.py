"""Print a one-off JSON snapshot of the calendar database pool."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from sqlalchemy import text

from study_calendar.db.monitoring import get_pool_snapshot
from study_calendar.db.session import get_engine

LOGGER = logging.getLogger("study_calendar.db_metrics")


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        engine = get_engine()
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        print(
            json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "pool": get_pool_snapshot(engine),
                }
            )
        )
        return 0
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Failed to collect database metrics: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
