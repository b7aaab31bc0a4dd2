"""Remote document store adapters.

Both adapters share the ``RemoteStore`` contract: every call is a coroutine
that returns ``Ok(value)`` or ``Err(kind, message)`` and never raises for an
expected failure (network down, auth rejected, payload refused). An absent
document is not an error: ``get_document`` returns ``Ok(None)`` and
``update_document``/``delete_document`` return ``Ok(False)``.

- ``HttpDocumentStore`` talks to the labbook document service over HTTPS.
- ``InMemoryDocumentStore`` keeps documents in process memory. Nothing builds
  it implicitly; tests pass it in (with fault and latency injection).
"""

import asyncio
import copy
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from labbook.errors import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@runtime_checkable
class RemoteStore(Protocol):
    """Per-user document store keyed by server-assigned ids."""

    async def add_document(self, collection: str, data: Document) -> Result[str]: ...

    async def update_document(self, collection: str, doc_id: str, data: Document) -> Result[bool]: ...

    async def delete_document(self, collection: str, doc_id: str) -> Result[bool]: ...

    async def get_document(self, collection: str, doc_id: str) -> Result[Optional[Document]]: ...

    async def query_collection(
        self,
        collection: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Result[List[Document]]: ...


# === HTTP ===


class HttpDocumentStore:
    """REST client for the labbook document service.

    Endpoints:
        POST   /collections/{c}/documents        -> {"id": ...}
        GET    /collections/{c}/documents/{id}   -> document
        PUT    /collections/{c}/documents/{id}
        DELETE /collections/{c}/documents/{id}
        POST   /collections/{c}/query            -> {"documents": [...]}
        GET    /health
    """

    def __init__(
        self,
        backend_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        """Authorization headers for backend requests."""
        return {
            "Authorization": f"Bearer {self.auth_token}",
            "Content-Type": "application/json",
        }

    def _url(self, collection: str, *parts: str) -> str:
        return "/".join([f"{self.backend_url}/collections/{collection}", *parts])

    async def _request(self, method: str, url: str, json: Any = None) -> Result[Optional[httpx.Response]]:
        if not self.auth_token:
            return Err(ErrorKind.NOT_AUTHENTICATED, "No auth token configured")
        try:
            response = await self._client.request(method, url, json=json, headers=self._headers())
        except httpx.TimeoutException as e:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, f"Request timed out: {e}")
        except httpx.HTTPError as e:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, f"Connection failed: {e}")

        status = response.status_code
        if status in (401, 403):
            return Err(ErrorKind.NOT_AUTHENTICATED, f"Backend returned status {status}")
        if status in (400, 413, 422):
            return Err(ErrorKind.VALIDATION_REJECTED, f"Backend returned status {status}: {response.text[:200]}")
        if status == 404:
            return Ok(None)
        if status >= 400:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, f"Backend returned status {status}")
        return Ok(response)

    @staticmethod
    def _json(response: httpx.Response) -> Result[Any]:
        try:
            return Ok(response.json())
        except ValueError as e:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, f"Invalid JSON from backend: {e}")

    async def add_document(self, collection: str, data: Document) -> Result[str]:
        result = await self._request("POST", self._url(collection, "documents"), json=data)
        if not result.ok:
            return result
        if result.value is None:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, f"Unknown collection {collection}")
        body = self._json(result.value)
        if not body.ok:
            return body
        doc_id = body.value.get("id") if isinstance(body.value, dict) else None
        if not doc_id:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, "Backend response carried no document id")
        return Ok(str(doc_id))

    async def update_document(self, collection: str, doc_id: str, data: Document) -> Result[bool]:
        result = await self._request("PUT", self._url(collection, "documents", doc_id), json=data)
        if not result.ok:
            return result
        return Ok(result.value is not None)

    async def delete_document(self, collection: str, doc_id: str) -> Result[bool]:
        result = await self._request("DELETE", self._url(collection, "documents", doc_id))
        if not result.ok:
            return result
        return Ok(result.value is not None)

    async def get_document(self, collection: str, doc_id: str) -> Result[Optional[Document]]:
        result = await self._request("GET", self._url(collection, "documents", doc_id))
        if not result.ok or result.value is None:
            return result
        body = self._json(result.value)
        if not body.ok:
            return body
        doc = body.value
        if not isinstance(doc, dict):
            return Err(ErrorKind.REMOTE_UNAVAILABLE, "Backend returned a non-object document")
        doc.setdefault("id", doc_id)
        return Ok(doc)

    async def query_collection(
        self,
        collection: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Result[List[Document]]:
        payload = {"filters": filters, "orderBy": order_by, "descending": descending}
        result = await self._request("POST", self._url(collection, "query"), json=payload)
        if not result.ok:
            return result
        if result.value is None:
            return Ok([])
        body = self._json(result.value)
        if not body.ok:
            return body
        documents = body.value.get("documents") if isinstance(body.value, dict) else None
        if not isinstance(documents, list):
            return Err(ErrorKind.REMOTE_UNAVAILABLE, "Backend query response carried no documents")
        return Ok([doc for doc in documents if isinstance(doc, dict)])

    async def health_check(self) -> Dict[str, Any]:
        """Check reachability of the backend (no auth required)."""
        start = time.monotonic()
        try:
            response = await self._client.get(f"{self.backend_url}/health", timeout=5.0)
        except httpx.HTTPError as e:
            return {"reachable": False, "status": f"Connection failed: {e}", "latency_ms": None}
        latency_ms = round((time.monotonic() - start) * 1000, 1)
        if response.status_code == 200:
            return {"reachable": True, "status": "Connected", "latency_ms": latency_ms}
        return {
            "reachable": False,
            "status": f"Backend returned status {response.status_code}",
            "latency_ms": latency_ms,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# === In-memory ===


class InMemoryDocumentStore:
    """Process-local document store with the same contract as the HTTP one.

    Fault injection:
        fail_next("add_document", ErrorKind.REMOTE_UNAVAILABLE) makes the next
        add fail; ``online = False`` fails every call; ``latency`` and
        ``delay_next`` add artificial suspension before a call completes.
    """

    OPERATIONS = ("add_document", "update_document", "delete_document", "get_document", "query_collection")

    def __init__(self, latency: float = 0.0, id_factory: Optional[Callable[[], str]] = None):
        self.latency = latency
        self.online = True
        self.collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self.calls: List[str] = []
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._failures: Dict[str, List[Err]] = defaultdict(list)
        self._delays: Dict[str, List[float]] = defaultdict(list)

    def fail_next(
        self,
        operation: str,
        kind: ErrorKind = ErrorKind.REMOTE_UNAVAILABLE,
        times: int = 1,
        message: str = "injected failure",
    ) -> None:
        if operation not in self.OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        self._failures[operation].extend(Err(kind, message) for _ in range(times))

    def delay_next(self, operation: str, seconds: float) -> None:
        if operation not in self.OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        self._delays[operation].append(seconds)

    def put(self, collection: str, data: Document, doc_id: Optional[str] = None) -> str:
        """Seed a document directly, bypassing faults and latency."""
        doc_id = doc_id or self._id_factory()
        self.collections[collection][doc_id] = {**copy.deepcopy(data), "id": doc_id}
        return doc_id

    def documents(self, collection: str) -> List[Document]:
        return [copy.deepcopy(doc) for doc in self.collections[collection].values()]

    async def _enter(self, operation: str) -> Optional[Err]:
        self.calls.append(operation)
        delay = self.latency
        if self._delays[operation]:
            delay += self._delays[operation].pop(0)
        if delay:
            await asyncio.sleep(delay)
        if not self.online:
            return Err(ErrorKind.REMOTE_UNAVAILABLE, "offline")
        if self._failures[operation]:
            return self._failures[operation].pop(0)
        return None

    async def add_document(self, collection: str, data: Document) -> Result[str]:
        failure = await self._enter("add_document")
        if failure:
            return failure
        return Ok(self.put(collection, data))

    async def update_document(self, collection: str, doc_id: str, data: Document) -> Result[bool]:
        failure = await self._enter("update_document")
        if failure:
            return failure
        if doc_id not in self.collections[collection]:
            return Ok(False)
        self.collections[collection][doc_id] = {**copy.deepcopy(data), "id": doc_id}
        return Ok(True)

    async def delete_document(self, collection: str, doc_id: str) -> Result[bool]:
        failure = await self._enter("delete_document")
        if failure:
            return failure
        return Ok(self.collections[collection].pop(doc_id, None) is not None)

    async def get_document(self, collection: str, doc_id: str) -> Result[Optional[Document]]:
        failure = await self._enter("get_document")
        if failure:
            return failure
        doc = self.collections[collection].get(doc_id)
        return Ok(copy.deepcopy(doc) if doc is not None else None)

    async def query_collection(
        self,
        collection: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Result[List[Document]]:
        failure = await self._enter("query_collection")
        if failure:
            return failure
        matches = [
            copy.deepcopy(doc)
            for doc in self.collections[collection].values()
            if all(doc.get(key) == value for key, value in filters.items())
        ]
        if order_by:
            matches.sort(key=lambda doc: str(doc.get(order_by) or ""), reverse=descending)
        return Ok(matches)
