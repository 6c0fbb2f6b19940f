"""Document store clients used by the proctoring state machine."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import requests

from ..errors import AlreadyExists, NotFound, PermissionDenied, TransientNetwork
from ..store import DocumentStore

logger = logging.getLogger(__name__)


class DocumentClient(ABC):
    """The three store operations the writing room needs."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        pass


class LocalDocumentClient(DocumentClient):
    """In-process client bound to one caller identity.

    ``latency`` seconds are awaited before every call to stand in for the
    network round trip.
    """

    def __init__(self, store: DocumentStore, caller: Optional[str] = None, latency: float = 0.0):
        self.store = store
        self.caller = caller
        self.latency = latency

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        await asyncio.sleep(self.latency)
        return self.store.get(collection, doc_id, caller=self.caller).data

    async def create(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.sleep(self.latency)
        self.store.create(collection, doc_id, fields, caller=self.caller)

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.sleep(self.latency)
        self.store.update(collection, doc_id, fields, caller=self.caller)


class HttpDocumentClient(DocumentClient):
    """Client for the store's HTTP surface (``/v1/{collection}/{doc_id}``)."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, collection: str, doc_id: str, fields: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/v1/{collection}/{doc_id}"
        try:
            response = self.session.request(method, url, json=dict(fields) if fields is not None else None,
                                            timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise TransientNetwork(str(e)) from e

        if response.status_code == 404:
            raise NotFound(collection, doc_id)
        if response.status_code == 409:
            raise AlreadyExists(collection, doc_id)
        if response.status_code in (401, 403):
            reason = None
            try:
                reason = response.json().get("detail")
            except ValueError:
                pass
            raise PermissionDenied(method.lower(), collection, doc_id, reason)
        if response.status_code >= 500:
            raise TransientNetwork(f"{method} {url} returned {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        body = await asyncio.to_thread(self._request, "GET", collection, doc_id)
        return body["data"]

    async def create(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._request, "POST", collection, doc_id, fields)

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._request, "PATCH", collection, doc_id, fields)
