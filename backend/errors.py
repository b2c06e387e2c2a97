"""Error taxonomy for the day-order and attendance engine.

Every storage-constraint violation is translated inside the engine into
one of these (or into a non-error skip/idempotent result); raw SQLAlchemy
errors never reach callers.
"""
import functools
import logging

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)


class EngineError(Exception):
    code = "engine_error"
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidCycleLength(EngineError):
    code = "invalid_cycle_length"


class InvalidDayOrder(EngineError):
    code = "invalid_day_order"


class InvalidOverride(EngineError):
    code = "invalid_override"


class OverrideNotFound(EngineError):
    code = "override_not_found"
    status_code = 404


class InvalidTimetableEntry(EngineError):
    code = "invalid_timetable_entry"


class TimetableNotFound(EngineError):
    code = "timetable_not_found"
    status_code = 404


class SessionNotFound(EngineError):
    code = "session_not_found"
    status_code = 404


class SessionNotActive(EngineError):
    code = "session_not_active"
    status_code = 409

    def __init__(self, message: str | None = None, status: str | None = None):
        super().__init__(message or "Session is no longer available")
        self.status = status


class InvalidExtension(EngineError):
    code = "invalid_extension"


class CodeExpired(EngineError):
    code = "code_expired"
    status_code = 410


class CodeAlreadyUsed(EngineError):
    code = "code_already_used"
    status_code = 409


class CodeMismatch(EngineError):
    code = "code_mismatch"
    status_code = 403


class InvalidAdmission(EngineError):
    code = "invalid_admission"
    status_code = 403


class StorageConflict(EngineError):
    code = "storage_conflict"
    status_code = 409


class Unavailable(EngineError):
    code = "unavailable"
    status_code = 503


def storage_guard(func):
    """Translate infrastructure failures raised by the store into Unavailable.

    The wrapped function must take the SQLModel session as its first
    positional argument so it can be rolled back.
    """

    @functools.wraps(func)
    def wrapper(session, *args, **kwargs):
        try:
            return func(session, *args, **kwargs)
        except EngineError:
            raise
        except IntegrityError as e:
            # Expected conflicts are handled at the call site.
            session.rollback()
            logger.error(f"Unexpected constraint violation in {func.__name__}: {str(e)}")
            raise StorageConflict("Conflicting write, reload and retry") from e
        except (OperationalError, DBAPIError) as e:
            session.rollback()
            logger.error(f"Storage failure in {func.__name__}: {str(e)}")
            raise Unavailable("Storage is unavailable, retry later") from e

    return wrapper
