"""
Access and invariant rules for the document store.

The store has no application server in front of it, so these rules are the
only thing standing between fully client-controlled writes and the stored
documents. Every rule is a pure function of one ``RuleRequest`` (caller,
prior document, proposed document, request time) and a read-only ``lookup``
for other documents. A rule returns ``None`` to allow the operation and a
short reason to deny it.

Example:
    >>> request = RuleRequest(Operation.update, SESSIONS, "a1_s1",
    ...                       prior={"strikeCount": 2, "status": "active"},
    ...                       proposed={"strikeCount": 1, "status": "active"})
    >>> allow(request, lambda collection, doc_id: None)
    False
"""

import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..models.constants import ASSIGNMENTS, SESSIONS
from ..models.enums import SessionStatus

Lookup = Callable[[str, str], Optional[Mapping[str, Any]]]

_MISSING = object()


class Operation(str, enum.Enum):
    get = "get"
    list = "list"
    create = "create"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class RuleRequest:
    """One attempted operation as seen by the rules."""
    operation: Operation
    collection: str
    doc_id: str
    caller: Optional[str] = None
    time: Optional[str] = None
    prior: Optional[Mapping[str, Any]] = None
    proposed: Optional[Mapping[str, Any]] = None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_non_negative_int(value: Any) -> bool:
    return _is_int(value) and value >= 0


def _unchanged(request: RuleRequest, field: str) -> bool:
    return request.prior.get(field, _MISSING) == request.proposed.get(field, _MISSING)


def _stamped(request: RuleRequest, field: str) -> bool:
    """The field is absent or carries the request time."""
    value = request.proposed.get(field, _MISSING)
    return value is _MISSING or value == request.time


# Assignments

def _read_assignment(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    # Students fetch the prompt before identifying themselves
    return None


def _create_assignment(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    data = request.proposed
    if request.caller is None:
        return "authentication required"
    if data.get("teacherId") != request.caller:
        return "teacherId must equal the caller"
    if "promptText" in data and not isinstance(data["promptText"], str):
        return "promptText must be text"
    if "strikeLimit" in data and not (_is_int(data["strikeLimit"]) and data["strikeLimit"] > 0):
        return "strikeLimit must be a positive integer"
    if not _stamped(request, "createdAt"):
        return "createdAt must be the server timestamp"
    return None


def _update_assignment(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    data = request.proposed
    if request.caller is None or request.caller != request.prior.get("teacherId"):
        return "only the owning teacher may modify an assignment"
    if not _unchanged(request, "teacherId"):
        return "teacherId is immutable"
    if not _unchanged(request, "createdAt"):
        return "createdAt is immutable"
    if "promptText" in data and not isinstance(data["promptText"], str):
        return "promptText must be text"
    if not _unchanged(request, "strikeLimit") and not (_is_int(data.get("strikeLimit")) and data["strikeLimit"] > 0):
        return "strikeLimit must be a positive integer"
    return None


def _delete_assignment(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    if request.caller is None or request.caller != request.prior.get("teacherId"):
        return "only the owning teacher may delete an assignment"
    return None


# Sessions

def _read_session(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    if request.caller is None:
        return "authentication required"
    if request.prior is None:
        return "session not readable"
    assignment_id = request.prior.get("assignmentId")
    assignment = lookup(ASSIGNMENTS, assignment_id) if isinstance(assignment_id, str) else None
    if assignment is None or assignment.get("teacherId") != request.caller:
        return "caller does not own the referenced assignment"
    if request.prior.get("teacherId") not in (None, request.caller):
        return "caller is not the session's teacher"
    return None


def _create_session(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    data = request.proposed
    assignment_id = data.get("assignmentId")
    student_id = data.get("studentId")
    if not (isinstance(assignment_id, str) and assignment_id and isinstance(student_id, str) and student_id):
        return "assignmentId and studentId are required"
    if request.doc_id != f"{assignment_id}_{student_id}":
        return "document id must equal assignmentId_studentId"
    if not (_is_int(data.get("strikeCount")) and data["strikeCount"] == 0):
        return "strikeCount must start at 0"
    if data.get("status") != SessionStatus.active.value:
        return "status must start active"
    if "submittedAt" in data:
        return "a new session cannot be submitted"
    if "wordCount" in data and not _is_non_negative_int(data["wordCount"]):
        return "wordCount must be a non-negative integer"
    if not (_stamped(request, "createdAt") and _stamped(request, "updatedAt")):
        return "timestamps must be server timestamps"
    return None


def _fills_session_teacher(request: RuleRequest, lookup: Lookup) -> bool:
    """A missing teacherId may only be filled in with the assignment owner."""
    if request.prior.get("teacherId") is not None:
        return False
    assignment_id = request.prior.get("assignmentId")
    assignment = lookup(ASSIGNMENTS, assignment_id) if isinstance(assignment_id, str) else None
    return assignment is not None and request.proposed.get("teacherId") == assignment.get("teacherId")


def _update_session(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    prior, data = request.prior, request.proposed
    if prior.get("status") != SessionStatus.active.value:
        return "session is locked"
    for field in ("assignmentId", "studentId", "createdAt"):
        if not _unchanged(request, field):
            return f"{field} is immutable"
    if not _unchanged(request, "teacherId") and not _fills_session_teacher(request, lookup):
        return "teacherId is immutable"
    strikes = data.get("strikeCount")
    if not _is_non_negative_int(strikes):
        return "strikeCount must be a non-negative integer"
    if strikes < prior.get("strikeCount", 0):
        return "strikeCount cannot decrease"
    status = data.get("status")
    if status not in (SessionStatus.active.value, SessionStatus.locked.value):
        return "status must be active or locked"
    if "wordCount" in data and not _is_non_negative_int(data["wordCount"]):
        return "wordCount must be a non-negative integer"
    if not _unchanged(request, "submittedAt"):
        if status != SessionStatus.locked.value or data.get("submittedAt") != request.time:
            return "submittedAt is set once, by the write that locks the session"
    elif status == SessionStatus.locked.value and "submittedAt" not in data:
        return "locking requires submittedAt"
    if not _unchanged(request, "updatedAt") and data.get("updatedAt") != request.time:
        return "updatedAt must be the server timestamp"
    return None


def _delete_session(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    return "sessions are never deleted"


RULES: Dict[Tuple[str, Operation], Callable[[RuleRequest, Lookup], Optional[str]]] = {
    (ASSIGNMENTS, Operation.get): _read_assignment,
    (ASSIGNMENTS, Operation.list): _read_assignment,
    (ASSIGNMENTS, Operation.create): _create_assignment,
    (ASSIGNMENTS, Operation.update): _update_assignment,
    (ASSIGNMENTS, Operation.delete): _delete_assignment,
    (SESSIONS, Operation.get): _read_session,
    (SESSIONS, Operation.list): _read_session,
    (SESSIONS, Operation.create): _create_session,
    (SESSIONS, Operation.update): _update_session,
    (SESSIONS, Operation.delete): _delete_session,
}


def evaluate(request: RuleRequest, lookup: Lookup) -> Optional[str]:
    """Return ``None`` if the operation is allowed, otherwise the denial reason."""
    rule = RULES.get((request.collection, request.operation))
    if rule is None:
        return f"no rule allows {request.operation.value} on {request.collection}"
    return rule(request, lookup)


def allow(request: RuleRequest, lookup: Lookup) -> bool:
    return evaluate(request, lookup) is None
