"""Client-side proctoring of a single writing session."""
from .autosave import AutosaveLoop, AUTOSAVE_RETRY_MESSAGE
from .cache import CachedSession, FileSessionCache, MemorySessionCache, SessionCache
from .clients import DocumentClient, HttpDocumentClient, LocalDocumentClient
from .environment import (
    ESCAPE_SIGNALS,
    EnvironmentMonitor,
    EnvironmentSignal,
    InputEvent,
    InputKind,
    ScriptedEnvironment,
)
from .machine import Phase, ProctoringStateMachine, SessionHandle, SubmitResult
from .settings import ProctoringSettings

__all__ = [
    "AutosaveLoop",
    "AUTOSAVE_RETRY_MESSAGE",
    "CachedSession",
    "FileSessionCache",
    "MemorySessionCache",
    "SessionCache",
    "DocumentClient",
    "HttpDocumentClient",
    "LocalDocumentClient",
    "ESCAPE_SIGNALS",
    "EnvironmentMonitor",
    "EnvironmentSignal",
    "InputEvent",
    "InputKind",
    "ScriptedEnvironment",
    "Phase",
    "ProctoringStateMachine",
    "SessionHandle",
    "SubmitResult",
    "ProctoringSettings",
]
