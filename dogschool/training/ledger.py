"""Session ledger: numbering, progress and completion of training programs.

A program consists of ``TOTAL_SESSIONS`` numbered sessions. The functions
here work on rows already fetched from the store; persisting the outcome
is left to :class:`dogschool.training.system.SchoolSystem`.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from .errors import ValidationError
from .store import as_list

TOTAL_SESSIONS = 8
FINAL_SESSION = TOTAL_SESSIONS

STATUS_EVALUATED = "evaluated"
STATUS_ACTIVE = "active"
STATUS_FINISHED = "finished"
CLIENT_STATUSES = (STATUS_EVALUATED, STATUS_ACTIVE, STATUS_FINISHED)


def next_available_session_number(existing_numbers: Iterable[int]) -> int | None:
    """Return the lowest free slot in ``1..TOTAL_SESSIONS`` or ``None``."""

    taken = set(existing_numbers)
    for number in range(1, TOTAL_SESSIONS + 1):
        if number not in taken:
            return number
    return None


def validate_session_number(number: int | str | None, existing_numbers: Iterable[int]) -> int:
    if number is None or str(number).strip() == "":
        raise ValidationError("Session number is required")
    try:
        number = int(number)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Session number must be an integer") from exc
    if not 1 <= number <= TOTAL_SESSIONS:
        raise ValidationError(f"Session number must be between 1 and {TOTAL_SESSIONS}")
    if number in set(existing_numbers):
        raise ValidationError(f"Session {number} is already scheduled for this client")
    return number


def completes_program(session: Mapping) -> bool:
    # Completing the last slot finishes the program even if earlier
    # sessions are still open.
    return int(session["session_number"]) == FINAL_SESSION


def completed_sessions(sessions: Iterable[Mapping] | Mapping | None) -> list[dict]:
    """Completed sessions ordered by ``session_number``."""

    rows = [dict(row) for row in as_list(sessions) if row.get("completed")]
    return sorted(rows, key=lambda row: row["session_number"])


def progress(client: Mapping) -> tuple[int, int]:
    """Return ``(completed_count, TOTAL_SESSIONS)`` for a client row."""

    return len(completed_sessions(client.get("sessions"))), TOTAL_SESSIONS
