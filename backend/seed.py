from datetime import time

from sqlmodel import Session, select

import config
from db import engine
from models import PeriodSlot
from schemas import PeriodDefinitionIn, SlotIn
from timetable import replace_period_definitions, save_day

SAMPLE_PERIODS = [
    PeriodDefinitionIn(period_number=1, name="Period 1", start_time=time(9, 0), end_time=time(9, 50)),
    PeriodDefinitionIn(period_number=2, name="Period 2", start_time=time(9, 50), end_time=time(10, 40)),
    PeriodDefinitionIn(period_number=3, name="Break", start_time=time(10, 40), end_time=time(11, 0), is_break=True),
    PeriodDefinitionIn(period_number=4, name="Period 3", start_time=time(11, 0), end_time=time(11, 50)),
    PeriodDefinitionIn(period_number=5, name="Period 4", start_time=time(11, 50), end_time=time(12, 40)),
]

# day order -> [(period, subject, teacher)]
SAMPLE_TIMETABLE = {
    1: [(1, "MATH101", "t.raman"), (2, "PHY101", "t.devi"), (4, "CHEM101", "t.kumar"), (5, "ENG101", "t.mary")],
    2: [(1, "PHY101", "t.devi"), (2, "MATH101", "t.raman"), (4, "ENG101", "t.mary"), (5, "CS101", "t.arjun")],
    3: [(1, "CS101", "t.arjun"), (2, "CHEM101", "t.kumar"), (4, "MATH101", "t.raman")],
}


def seed_database(unit_id: str = config.DEFAULT_UNIT, class_id: str = "BSC-CS-A"):
    """Seed the database with a sample period template and class timetable."""
    with Session(engine) as session:
        # Check if data already exists
        existing = session.exec(select(PeriodSlot).where(PeriodSlot.unit_id == unit_id)).first()
        if existing:
            print("Database already has timetable data, skipping seed.")
            return

        replace_period_definitions(session, unit_id, SAMPLE_PERIODS)
        total = 0
        for day, periods in SAMPLE_TIMETABLE.items():
            entries = [
                SlotIn(period_number=p, subject_id=subject, teacher_id=teacher)
                for p, subject, teacher in periods
            ]
            entries.append(SlotIn(period_number=3, is_break=True, break_name="Break"))
            total += len(save_day(session, unit_id, class_id, day, entries))
        print(f"Seeded {unit_id}/{class_id} with {total} period slots.")


if __name__ == "__main__":
    from db import create_db_and_tables

    create_db_and_tables()
    seed_database()
