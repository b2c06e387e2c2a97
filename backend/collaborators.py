"""Contracts for the systems around the engine: rosters, teaching assignments
and notification delivery. The defaults here are in-memory stand-ins used
until a deployment wires in the real services."""
import logging
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)


class RosterProvider(Protocol):
    def list_participants(self, class_id: str) -> list[str]: ...


class AssignmentProvider(Protocol):
    def list_assignments(self, class_id: str) -> list[tuple[str, str]]: ...


class Notifier(Protocol):
    def notify(self, session_id: int, recipients: list[str]) -> None: ...


class StaticRoster:
    def __init__(self, rosters: dict[str, Iterable[str]] | None = None):
        self._rosters = {k: list(v) for k, v in (rosters or {}).items()}

    def list_participants(self, class_id: str) -> list[str]:
        return list(self._rosters.get(class_id, []))


class StaticAssignments:
    """(subject_id, teacher_id) pairs per class; an unknown class is unrestricted."""

    def __init__(self, assignments: dict[str, Iterable[tuple[str, str]]] | None = None):
        self._assignments = {k: list(v) for k, v in (assignments or {}).items()}

    def list_assignments(self, class_id: str) -> list[tuple[str, str]]:
        return list(self._assignments.get(class_id, []))


class LoggingNotifier:
    def notify(self, session_id: int, recipients: list[str]) -> None:
        logger.info(f"Session {session_id} created, notifying {recipients}")


def dispatch_session_created(notifier: Notifier | None, session_id: int, recipients: list[str]) -> None:
    """Fire-and-forget: delivery problems are the collaborator's, never the caller's."""
    if notifier is None:
        return
    try:
        notifier.notify(session_id, recipients)
    except Exception as e:
        logger.warning(f"Notification for session {session_id} failed: {str(e)}")
