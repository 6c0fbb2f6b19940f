"""Wire protocol of the document store.

Clients talk to the store directly; these routes only translate HTTP to store
operations and errors back to status codes. All authorization happens in the
rule policy.
"""
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status

from ..auth import get_caller
from ..database import SessionLocal
from ..errors import AlreadyExists, NotFound, PermissionDenied
from ..store import Document, DocumentStore, Query

router = APIRouter(prefix="/v1", tags=["Documents"])

_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    """Dependency to get the process-wide document store."""
    global _store
    if _store is None:
        _store = DocumentStore(SessionLocal)
    return _store


def _serialize(document: Document) -> Dict[str, Any]:
    return {"id": document.id, "data": document.data}


def _call(operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return operation(*args, **kwargs)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except AlreadyExists as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except PermissionDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)


@router.get("/{collection}")
async def query_documents(
    collection: str,
    request: Request,
    caller: Optional[str] = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
):
    """Equality query; every query parameter is a field filter matched against the JSON form of the value."""
    query = Query(collection, where=dict(request.query_params), text_filters=True)
    documents = _call(store.query, query, caller=caller)
    return {"documents": [_serialize(doc) for doc in documents]}


@router.get("/{collection}/{doc_id}")
async def get_document(
    collection: str,
    doc_id: str,
    caller: Optional[str] = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
):
    return _serialize(_call(store.get, collection, doc_id, caller=caller))


@router.post("/{collection}/{doc_id}", status_code=status.HTTP_201_CREATED)
async def create_document(
    collection: str,
    doc_id: str,
    fields: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
):
    return _serialize(_call(store.create, collection, doc_id, fields, caller=caller))


@router.patch("/{collection}/{doc_id}")
async def update_document(
    collection: str,
    doc_id: str,
    fields: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
):
    return _serialize(_call(store.update, collection, doc_id, fields, caller=caller))


@router.delete("/{collection}/{doc_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    collection: str,
    doc_id: str,
    caller: Optional[str] = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
):
    _call(store.delete, collection, doc_id, caller=caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
