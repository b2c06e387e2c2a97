"""Time-driven trigger: materialize today's sessions and sweep expired ones.

Run from cron at the start of the day (and as often as convenient after);
repeated runs are harmless.
"""
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlmodel import Session

import config
from collaborators import LoggingNotifier
from db import create_db_and_tables, engine, validate_schema
from errors import EngineError
from materializer import materialize_today
from sessions import sweep_expired


def run(units: list[str]) -> int:
    failures = 0
    notifier = LoggingNotifier()
    with Session(engine) as session:
        for unit_id in units:
            try:
                result = materialize_today(session, unit_id, notifier=notifier)
            except EngineError as e:
                print(f"ERROR: {unit_id}: {e.code}: {e.message}")
                failures += 1
                continue
            if result.is_holiday:
                print(f"{unit_id}: holiday ({result.holiday_name}), nothing to create")
                continue
            print(
                f"{unit_id}: day order {result.day_order} on {result.date}, "
                f"created {len(result.created)}, skipped {len(result.skipped)}"
            )

        try:
            expired = sweep_expired(session)
            print(f"Expiry sweep: {expired} session(s) marked expired")
        except EngineError as e:
            print(f"ERROR: expiry sweep: {e.code}: {e.message}")
            failures += 1
    return failures


if __name__ == "__main__":
    create_db_and_tables()
    validate_schema()
    sys.exit(1 if run(config.MATERIALIZE_UNITS) else 0)
