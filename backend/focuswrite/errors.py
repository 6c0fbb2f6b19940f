"""Error taxonomy shared by the document store and its clients."""

from typing import Optional


class FocusWriteError(Exception):
    """Base exception for FocusWrite errors."""
    pass


class NotFound(FocusWriteError):
    """Raised when a document does not exist."""
    def __init__(self, collection: str, doc_id: str, message: str = ""):
        self.collection = collection
        self.doc_id = doc_id
        self.message = message or f"Document not found: {collection}/{doc_id}"
        super().__init__(self.message)


class AlreadyExists(FocusWriteError):
    """Raised when creating a document whose id is taken."""
    def __init__(self, collection: str, doc_id: str, message: str = ""):
        self.collection = collection
        self.doc_id = doc_id
        self.message = message or f"Document already exists: {collection}/{doc_id}"
        super().__init__(self.message)


class PermissionDenied(FocusWriteError):
    """Raised when the rule policy rejects an operation."""
    def __init__(self, operation: str, collection: str, doc_id: str, reason: Optional[str] = None):
        self.operation = operation
        self.collection = collection
        self.doc_id = doc_id
        self.reason = reason
        self.message = f"Permission denied: {operation} {collection}/{doc_id}"
        if reason:
            self.message += f" ({reason})"
        super().__init__(self.message)


class TransientNetwork(FocusWriteError):
    """Raised when the store could not be reached; safe to retry."""
    pass


class EnvironmentUnavailable(FocusWriteError):
    """Raised when sandboxed presentation mode could not be entered."""
    def __init__(self, message: str = ""):
        self.message = message or "Fullscreen is required to begin. Please allow fullscreen and try again."
        super().__init__(self.message)


class StartError(FocusWriteError):
    """Base exception for failures while starting a writing session."""
    pass


class AssignmentUnavailable(StartError):
    """Raised when the assignment is missing or could not be loaded."""
    pass


class InvalidStudentId(StartError):
    """Raised when the student identifier is blank."""
    pass


class SessionStartFailed(StartError):
    """Raised when the session document could not be created or resumed."""
    pass


class SubmitError(FocusWriteError):
    """Raised when the locking write was rejected or could not be delivered."""
    pass
