"""Document schema for FocusWrite."""

from .constants import ASSIGNMENTS, SESSIONS, DEFAULT_STRIKE_LIMIT, SERVER_TIMESTAMP
from .enums import SessionStatus, ActiveStatus
from .document import StoredDocument
from .assignment import Assignment, new_assignment_id, new_assignment_fields, resolve_strike_limit
from .student_session import (
    StudentSession,
    count_words,
    new_session_fields,
    normalize_student_id,
    session_id_for,
)

__all__ = [
    "ASSIGNMENTS",
    "SESSIONS",
    "DEFAULT_STRIKE_LIMIT",
    "SERVER_TIMESTAMP",
    "SessionStatus",
    "ActiveStatus",
    "StoredDocument",
    "Assignment",
    "new_assignment_id",
    "new_assignment_fields",
    "resolve_strike_limit",
    "StudentSession",
    "count_words",
    "new_session_fields",
    "normalize_student_id",
    "session_id_for",
]
