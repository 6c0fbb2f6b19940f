"""Assignment documents."""

import secrets
import string
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_STRIKE_LIMIT, SERVER_TIMESTAMP
from .enums import ActiveStatus

ASSIGNMENT_ID_LENGTH = 10
_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def new_assignment_id(length: int = ASSIGNMENT_ID_LENGTH) -> str:
    """Generate an opaque, URL-safe assignment id."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def resolve_strike_limit(value: Any) -> int:
    """Return ``value`` when it is a positive integer, else the default limit."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return DEFAULT_STRIKE_LIMIT
    return value


class Assignment(BaseModel):
    """A teacher-authored prompt with a strike limit."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    teacher_id: str = Field(alias="teacherId")
    prompt_text: str = Field(default="", alias="promptText")
    strike_limit: Optional[Any] = Field(default=None, alias="strikeLimit")
    active_status: Optional[str] = Field(default=None, alias="activeStatus")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Assignment":
        return cls.model_validate({**data, "id": doc_id})

    @property
    def effective_strike_limit(self) -> int:
        return resolve_strike_limit(self.strike_limit)

    def __repr__(self):
        return f"<Assignment(id={self.id}, teacher_id='{self.teacher_id}')>"


def new_assignment_fields(teacher_id: str, prompt_text: str, strike_limit: Any = DEFAULT_STRIKE_LIMIT) -> Dict[str, Any]:
    """Initial field set for an assignment created by ``teacher_id``."""
    return {
        "teacherId": teacher_id,
        "promptText": prompt_text.strip(),
        "strikeLimit": resolve_strike_limit(strike_limit),
        "createdAt": SERVER_TIMESTAMP,
        "activeStatus": ActiveStatus.active.value,
    }
