"""
Rule-guarded document store.

Documents live in a single SQLAlchemy table and are addressed by
``(collection, doc_id)``. Every read and write is checked against the rule
policy inside one critical section together with the read of the prior
document and the write itself, so the compare-and-validate step is atomic
with respect to every other operation on the store.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import AlreadyExists, NotFound, PermissionDenied
from ..models.constants import SERVER_TIMESTAMP
from ..models.document import StoredDocument
from ..rules import Operation, RuleRequest, evaluate
from .query import Change, Document, Query, Snapshot

logger = logging.getLogger(__name__)

Listener = Callable[[Snapshot], None]


class Subscription:
    """Live query registration; deliveries stop after ``cancel()``."""

    def __init__(self, store: "DocumentStore", query: Query, caller: Optional[str], callback: Listener):
        self.store = store
        self.query = query
        self.caller = caller
        self.callback = callback
        self.active = True
        self._documents: Dict[str, Dict[str, Any]] = {}

    def cancel(self) -> None:
        self.active = False
        self.store._unsubscribe(self)

    def _reset(self, documents: List[Document]) -> Snapshot:
        self._documents = {doc.id: doc.data for doc in documents}
        return Snapshot(documents=list(documents), changes=[Change("added", doc) for doc in documents])

    def _apply(self, doc_id: str, was_visible: bool, data: Optional[Dict[str, Any]]) -> Optional[Snapshot]:
        now_visible = data is not None
        if not was_visible and not now_visible:
            return None
        if now_visible:
            change_type = "modified" if was_visible else "added"
            self._documents[doc_id] = data
            change = Change(change_type, Document(doc_id, data))
        else:
            change = Change("removed", Document(doc_id, self._documents.pop(doc_id, {})))
        documents = [Document(key, value) for key, value in self._documents.items()]
        return Snapshot(documents=documents, changes=[change])


class DocumentStore:
    """Schemaless document store with per-operation rule evaluation."""

    def __init__(self, session_factory: sessionmaker, clock: Optional[Callable[[], datetime]] = None):
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self._subscriptions: List[Subscription] = []

    @contextmanager
    def _session_scope(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            db.rollback()
            raise
        finally:
            db.close()

    def _now(self) -> str:
        return self._clock().isoformat()

    @staticmethod
    def _resolve(fields: Mapping[str, Any], now: str) -> Dict[str, Any]:
        """Replace server timestamp sentinels with the request time."""
        return {key: now if value == SERVER_TIMESTAMP else copy.deepcopy(value) for key, value in fields.items()}

    @staticmethod
    def _row(db: Session, collection: str, doc_id: str) -> Optional[StoredDocument]:
        return db.get(StoredDocument, (collection, doc_id))

    def _lookup(self, db: Session) -> Callable[[str, str], Optional[Dict[str, Any]]]:
        def lookup(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
            row = self._row(db, collection, doc_id)
            return dict(row.data) if row is not None else None
        return lookup

    def _check(self, db: Session, request: RuleRequest) -> None:
        reason = evaluate(request, self._lookup(db))
        if reason is not None:
            logger.warning(
                f"Denied {request.operation.value} {request.collection}/{request.doc_id} "
                f"for caller={request.caller!r}: {reason}"
            )
            raise PermissionDenied(request.operation.value, request.collection, request.doc_id, reason)

    def _readable(self, db: Session, sub: Subscription, doc_id: str, data: Optional[Dict[str, Any]]) -> bool:
        if data is None or not sub.query.matches(data):
            return False
        request = RuleRequest(Operation.list, sub.query.collection, doc_id, caller=sub.caller,
                              time=self._now(), prior=data)
        return evaluate(request, self._lookup(db)) is None

    def _fan_out(
        self, db: Session, collection: str, doc_id: str,
        prior: Optional[Dict[str, Any]], current: Optional[Dict[str, Any]],
    ) -> List[Tuple[Subscription, Snapshot]]:
        deliveries = []
        for sub in list(self._subscriptions):
            if sub.query.collection != collection:
                continue
            was_visible = doc_id in sub._documents
            visible = current if self._readable(db, sub, doc_id, current) else None
            snapshot = sub._apply(doc_id, was_visible, copy.deepcopy(visible))
            if snapshot is not None:
                deliveries.append((sub, snapshot))
        return deliveries

    @staticmethod
    def _deliver(deliveries: List[Tuple[Subscription, Snapshot]]) -> None:
        for sub, snapshot in deliveries:
            if not sub.active:
                continue
            try:
                sub.callback(snapshot)
            except Exception as e:
                logger.exception(f"Subscription listener for {sub.query.collection} failed: {e}")

    def get(self, collection: str, doc_id: str, caller: Optional[str] = None) -> Document:
        """Read one document. Raises NotFound or PermissionDenied."""
        with self._lock, self._session_scope() as db:
            row = self._row(db, collection, doc_id)
            prior = dict(row.data) if row is not None else None
            self._check(db, RuleRequest(Operation.get, collection, doc_id, caller=caller,
                                        time=self._now(), prior=prior))
            if row is None:
                raise NotFound(collection, doc_id)
            return Document(doc_id, prior)

    def create(self, collection: str, doc_id: str, fields: Mapping[str, Any], caller: Optional[str] = None) -> Document:
        """Create a document. Raises AlreadyExists or PermissionDenied."""
        with self._lock:
            with self._session_scope() as db:
                if self._row(db, collection, doc_id) is not None:
                    raise AlreadyExists(collection, doc_id)
                now = self._now()
                data = self._resolve(fields, now)
                self._check(db, RuleRequest(Operation.create, collection, doc_id, caller=caller,
                                            time=now, proposed=data))
                db.add(StoredDocument(collection=collection, doc_id=doc_id, data=data))
                db.flush()
                deliveries = self._fan_out(db, collection, doc_id, None, data)
            logger.info(f"Created {collection}/{doc_id}")
        self._deliver(deliveries)
        return Document(doc_id, data)

    def update(self, collection: str, doc_id: str, fields: Mapping[str, Any], caller: Optional[str] = None) -> Document:
        """Merge ``fields`` into an existing document. Raises NotFound or PermissionDenied."""
        with self._lock:
            with self._session_scope() as db:
                row = self._row(db, collection, doc_id)
                if row is None:
                    raise NotFound(collection, doc_id)
                now = self._now()
                prior = dict(row.data)
                data = {**copy.deepcopy(prior), **self._resolve(fields, now)}
                self._check(db, RuleRequest(Operation.update, collection, doc_id, caller=caller,
                                            time=now, prior=prior, proposed=data))
                row.data = data
                db.flush()
                deliveries = self._fan_out(db, collection, doc_id, prior, data)
            logger.debug(f"Updated {collection}/{doc_id} fields={sorted(fields)}")
        self._deliver(deliveries)
        return Document(doc_id, data)

    def delete(self, collection: str, doc_id: str, caller: Optional[str] = None) -> None:
        """Delete a document. Raises NotFound or PermissionDenied."""
        with self._lock:
            with self._session_scope() as db:
                row = self._row(db, collection, doc_id)
                if row is None:
                    raise NotFound(collection, doc_id)
                prior = dict(row.data)
                self._check(db, RuleRequest(Operation.delete, collection, doc_id, caller=caller,
                                            time=self._now(), prior=prior))
                db.delete(row)
                db.flush()
                deliveries = self._fan_out(db, collection, doc_id, prior, None)
            logger.info(f"Deleted {collection}/{doc_id}")
        self._deliver(deliveries)

    def _visible(self, db: Session, query: Query, caller: Optional[str]) -> List[Document]:
        rows = db.execute(
            select(StoredDocument).where(StoredDocument.collection == query.collection)
        ).scalars().all()
        lookup = self._lookup(db)
        now = self._now()
        documents = []
        for row in rows:
            data = dict(row.data)
            if not query.matches(data):
                continue
            request = RuleRequest(Operation.list, query.collection, row.doc_id, caller=caller, time=now, prior=data)
            if evaluate(request, lookup) is None:
                documents.append(Document(row.doc_id, copy.deepcopy(data)))
        return documents

    def query(self, query: Query, caller: Optional[str] = None) -> List[Document]:
        """Return the matching documents the caller may read."""
        with self._lock, self._session_scope() as db:
            return self._visible(db, query, caller)

    def subscribe(self, query: Query, callback: Listener, caller: Optional[str] = None) -> Subscription:
        """Deliver an initial snapshot, then one snapshot per committed change, until cancelled."""
        sub = Subscription(self, query, caller, callback)
        with self._lock:
            with self._session_scope() as db:
                initial = sub._reset(self._visible(db, query, caller))
            self._subscriptions.append(sub)
        self._deliver([(sub, initial)])
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
