"""Test configuration and fixtures."""

import os

# Keep focuswrite.database from opening a file-backed engine during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from focuswrite.database import Base
from focuswrite.models import (
    ASSIGNMENTS,
    SESSIONS,
    new_assignment_fields,
    new_session_fields,
)
from focuswrite.store import DocumentStore

# Use in-memory SQLite for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

TEACHER = "teacher-1"
OTHER_TEACHER = "teacher-2"
ASSIGNMENT_ID = "assignmentA"
STUDENT_ID = "student001"
SESSION_ID = f"{ASSIGNMENT_ID}_{STUDENT_ID}"


@pytest.fixture
def engine():
    """Create a fresh in-memory database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory):
    """Create a document store on the test database."""
    return DocumentStore(session_factory)


@pytest.fixture
def sample_assignment(store):
    """Create an assignment owned by TEACHER with the default strike limit."""
    return store.create(
        ASSIGNMENTS,
        ASSIGNMENT_ID,
        new_assignment_fields(TEACHER, "Write about a place you love.", 3),
        caller=TEACHER,
    )


@pytest.fixture
def sample_session(store, sample_assignment):
    """Create an active session for STUDENT_ID, written by an unauthenticated student."""
    fields = new_session_fields(ASSIGNMENT_ID, STUDENT_ID, teacher_id=TEACHER, student_name="Test Student")
    return store.create(SESSIONS, SESSION_ID, fields)
