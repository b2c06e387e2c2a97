import logging
import os

from sqlalchemy import inspect
from sqlmodel import Session, SQLModel, create_engine, select

from models import SchemaVersion

logger = logging.getLogger(__name__)

# Bump whenever a table or constraint changes; validate_schema refuses to run otherwise.
SCHEMA_VERSION = 2

# Load-bearing uniqueness constraints, table -> set of column tuples
REQUIRED_UNIQUE_CONSTRAINTS = {
    "dayorderconfig": {("unit_id",)},
    "dayorderconfigrevision": {("unit_id", "anchor_date")},
    "dayorderoverride": {("unit_id", "effective_date")},
    "perioddefinition": {("unit_id", "period_number")},
    "periodslot": {("unit_id", "class_id", "day_order", "period_number")},
    "attendancesession": {("session_code",)},
    "materializationrecord": {
        ("unit_id", "class_id", "day_order", "period_number", "scheduled_date"),
        ("session_id",),
    },
    "attendancerecord": {("session_id", "participant")},
    "onetimecode": {("participant",)},
}

# Get database URL from environment, default to SQLite for local dev
db_path = os.getenv("DATABASE_PATH", "./dayorder.db")
env = os.getenv("ENV", "dev").lower()

if os.getenv("DATABASE_URL"):
    DATABASE_URL = os.getenv("DATABASE_URL")
else:
    # Guard against SQLite fallback in production
    if env in ("prod", "production"):
        raise RuntimeError(
            "DATABASE_URL missing in production; refusing to start with SQLite. "
            "Please configure DATABASE_URL environment variable."
        )
    DATABASE_URL = f"sqlite:///{db_path}"

# SQLAlchemy needs postgresql:// but some hosts hand out postgres://
if DATABASE_URL and DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

db_driver = DATABASE_URL.split(":", 1)[0] if ":" in DATABASE_URL else "unknown"
logger.info(f"DB_URL_DRIVER={db_driver}")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)


class SchemaMismatch(RuntimeError):
    pass


def create_db_and_tables():
    """Create database and tables if they don't exist and stamp the schema version.
    This is safe to call multiple times - it won't wipe existing data.
    """
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        stamped = session.exec(select(SchemaVersion)).first()
        if stamped is None:
            session.add(SchemaVersion(version=SCHEMA_VERSION))
            session.commit()
            logger.info(f"Stamped schema version {SCHEMA_VERSION}")


def validate_schema(bind=None):
    """Check the stored schema version and every load-bearing unique constraint."""
    bind = bind or engine
    with Session(bind) as session:
        stamped = session.exec(select(SchemaVersion)).first()
    if stamped is None or stamped.version != SCHEMA_VERSION:
        found = stamped.version if stamped else None
        raise SchemaMismatch(
            f"Schema version {found} does not match expected {SCHEMA_VERSION}; "
            "run the migration for this release before starting"
        )

    inspector = inspect(bind)
    tables = set(inspector.get_table_names())
    for table, required in REQUIRED_UNIQUE_CONSTRAINTS.items():
        if table not in tables:
            raise SchemaMismatch(f"Missing table {table}")
        present = {
            tuple(c["column_names"]) for c in inspector.get_unique_constraints(table)
        }
        # Some backends report unique constraints as unique indexes instead
        present |= {
            tuple(i["column_names"])
            for i in inspector.get_indexes(table)
            if i.get("unique")
        }
        missing = required - present
        if missing:
            raise SchemaMismatch(f"Table {table} is missing unique constraint(s) {sorted(missing)}")
    logger.info(f"Schema version {SCHEMA_VERSION} validated")


def get_session():
    """Get database session."""
    with Session(engine) as session:
        yield session
