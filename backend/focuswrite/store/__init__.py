"""Document store guarded by the rule policy."""
from .document_store import DocumentStore, Subscription
from .query import Change, Document, Query, Snapshot

__all__ = ["DocumentStore", "Subscription", "Change", "Document", "Query", "Snapshot"]
