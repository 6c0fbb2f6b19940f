"""Shared enums for documents and rules."""
import enum


class SessionStatus(str, enum.Enum):
    active = "active"
    locked = "locked"


class ActiveStatus(str, enum.Enum):
    active = "active"
    archived = "archived"
