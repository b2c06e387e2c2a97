import os
import secrets
from datetime import datetime
from zoneinfo import ZoneInfo


def _parse_int(value: str | None, fallback: int, minimum: int | None = None) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        return fallback
    if minimum is not None:
        return max(minimum, parsed)
    return parsed


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


TIMEZONE = os.getenv("DAYORDER_TIMEZONE", "Asia/Kolkata").strip() or "Asia/Kolkata"
DEFAULT_UNIT = os.getenv("DAYORDER_DEFAULT_UNIT", "General").strip() or "General"

# Python weekday numbering: Monday=0 .. Sunday=6
WEEKLY_REST_DAY = _parse_int(os.getenv("DAYORDER_WEEKLY_REST_DAY"), 6) % 7
DEFAULT_CYCLE_LENGTH = _parse_int(os.getenv("DAYORDER_DEFAULT_CYCLE_LENGTH"), 6, minimum=1)
MAX_CYCLE_LENGTH = _parse_int(os.getenv("DAYORDER_MAX_CYCLE_LENGTH"), 10, minimum=1)

OTP_TTL_SECONDS = _parse_int(os.getenv("OTP_TTL_SECONDS"), 120, minimum=1)
OTP_LENGTH = _parse_int(os.getenv("OTP_LENGTH"), 6, minimum=4)
OTP_RETENTION_SECONDS = _parse_int(os.getenv("OTP_RETENTION_SECONDS"), 600, minimum=0)

ADMISSION_SIGNING_KEY = (
    os.getenv("ADMISSION_SIGNING_KEY", "").strip()
    or secrets.token_urlsafe(32)
)
ADMISSION_TOKEN_TTL_SECONDS = _parse_int(
    os.getenv("ADMISSION_TOKEN_TTL_SECONDS"), 60, minimum=1
)

SESSION_CODE_PREFIX_AUTO = os.getenv("SESSION_CODE_PREFIX_AUTO", "AUTO-").strip().upper()
SESSION_CODE_PREFIX_MANUAL = os.getenv("SESSION_CODE_PREFIX_MANUAL", "SESS-").strip().upper()
SESSION_CODE_LENGTH = _parse_int(os.getenv("SESSION_CODE_LENGTH"), 6, minimum=4)
MANUAL_SESSION_MINUTES = _parse_int(os.getenv("MANUAL_SESSION_MINUTES"), 60, minimum=1)

MATERIALIZE_UNITS = _parse_csv(os.getenv("MATERIALIZE_UNITS"), [DEFAULT_UNIT])

CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)


def local_now() -> datetime:
    """Current wall-clock time in the institution timezone, as a naive datetime."""
    return datetime.now(ZoneInfo(TIMEZONE)).replace(tzinfo=None)
