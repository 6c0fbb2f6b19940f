"""Session documents: one student's attempt at one assignment."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import SERVER_TIMESTAMP
from .enums import SessionStatus


def normalize_student_id(raw: str) -> str:
    """Remove every whitespace character from a typed student identifier."""
    return "".join(raw.split())


def session_id_for(assignment_id: str, student_id: str) -> str:
    return f"{assignment_id}_{student_id}"


def count_words(text: str) -> int:
    return len(text.split())


class StudentSession(BaseModel):
    """A single student's in-progress or completed attempt."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    assignment_id: str = Field(alias="assignmentId")
    student_id: str = Field(alias="studentId")
    student_name: Optional[str] = Field(default=None, alias="studentName")
    teacher_id: Optional[str] = Field(default=None, alias="teacherId")
    content: str = ""
    word_count: int = Field(default=0, ge=0, alias="wordCount")
    strike_count: int = Field(default=0, ge=0, alias="strikeCount")
    status: SessionStatus = SessionStatus.active
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    submitted_at: Optional[datetime] = Field(default=None, alias="submittedAt")

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "StudentSession":
        return cls.model_validate({**data, "id": doc_id})

    @property
    def is_locked(self) -> bool:
        return self.status == SessionStatus.locked

    def __repr__(self):
        return f"<StudentSession(id={self.id}, status='{self.status.value}')>"


def new_session_fields(
    assignment_id: str,
    student_id: str,
    teacher_id: Optional[str] = None,
    student_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Initial field set accepted by the session create rule."""
    return {
        "assignmentId": assignment_id,
        "studentId": student_id,
        "teacherId": teacher_id,
        "studentName": (student_name or "").strip() or None,
        "content": "",
        "wordCount": 0,
        "strikeCount": 0,
        "status": SessionStatus.active.value,
        "createdAt": SERVER_TIMESTAMP,
        "updatedAt": SERVER_TIMESTAMP,
    }
