"""HTTP surface of the document store."""
from .router import router as documents_router, get_store

__all__ = ["documents_router", "get_store"]
