"""
Remote store interfaces and in-memory implementations.

The remote document store is untrusted: it only ever receives the flat
signed document (plaintext ids, encrypted envelopes, signature). Blob
storage receives raw attachment ciphertext.

``MemoryStore`` round-trips every document through JSON (orjson) the way
a network store would, and can scramble key order to mimic stores that do
not preserve it.
"""
import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping
from typing import Any, Optional, Protocol

import orjson

from .exceptions import RecordNotFound

logger = logging.getLogger("hold_vault.store")

Document = dict[str, Any]
Change = tuple[str, Optional[Document]]


class RemoteStore(Protocol):
    async def put(self, collection: str, id: str, document: Document) -> None: ...

    async def get(self, collection: str, id: str) -> Optional[Document]: ...

    async def delete(self, collection: str, id: str) -> None: ...

    async def query(
        self, collection: str, filter: Optional[Mapping[str, Any]] = None,
    ) -> list[tuple[str, Document]]: ...

    def subscribe(
        self, collection: str, filter: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[Change]: ...


class BlobStore(Protocol):
    async def upload(self, path: str, data: bytes) -> None: ...

    async def download(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> None: ...


def _matches(document: Mapping[str, Any], filter: Optional[Mapping[str, Any]]) -> bool:
    if not filter:
        return True
    return all(document.get(k) == v for k, v in filter.items())


def _scramble(value: Any) -> Any:
    """Reverse key order at every level."""
    if isinstance(value, dict):
        return {k: _scramble(value[k]) for k in reversed(list(value))}
    if isinstance(value, list):
        return [_scramble(v) for v in value]
    return value


class MemoryStore:
    """In-process document store with change subscriptions.

    Subscribers first receive a snapshot of the matching documents, then
    ``(id, document)`` for every write and ``(id, None)`` for deletes.
    """

    def __init__(self, scramble_keys: bool = False):
        self._collections: dict[str, dict[str, bytes]] = defaultdict(dict)
        self._subscribers: list[tuple[str, Optional[Mapping[str, Any]], asyncio.Queue]] = []
        self._scramble_keys = scramble_keys

    def _load(self, raw: bytes) -> Document:
        document = orjson.loads(raw)
        if self._scramble_keys:
            document = _scramble(document)
        return document

    def _notify(self, collection: str, change: Change) -> None:
        id, document = change
        for name, filter, queue in self._subscribers:
            if name != collection:
                continue
            if document is not None and not _matches(document, filter):
                continue
            queue.put_nowait((id, document))

    async def put(self, collection: str, id: str, document: Document) -> None:
        raw = orjson.dumps(document)
        self._collections[collection][id] = raw
        logger.debug("Store put: collection=%s id=%s", collection, id)
        self._notify(collection, (id, self._load(raw)))

    async def get(self, collection: str, id: str) -> Optional[Document]:
        raw = self._collections[collection].get(id)
        if raw is None:
            return None
        return self._load(raw)

    async def delete(self, collection: str, id: str) -> None:
        if self._collections[collection].pop(id, None) is not None:
            logger.debug("Store delete: collection=%s id=%s", collection, id)
            self._notify(collection, (id, None))

    async def query(
        self, collection: str, filter: Optional[Mapping[str, Any]] = None,
    ) -> list[tuple[str, Document]]:
        results = []
        for id, raw in list(self._collections[collection].items()):
            document = self._load(raw)
            if _matches(document, filter):
                results.append((id, document))
        return results

    async def subscribe(
        self, collection: str, filter: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[Change]:
        queue: asyncio.Queue = asyncio.Queue()
        entry = (collection, filter, queue)
        self._subscribers.append(entry)
        try:
            for change in await self.query(collection, filter):
                yield change
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(entry)

    def raw(self, collection: str, id: str) -> Document:
        """Direct access to a stored document, bypassing notifications."""
        return orjson.loads(self._collections[collection][id])

    def overwrite(self, collection: str, id: str, document: Document) -> None:
        """Replace a stored document silently, as a hostile server could."""
        self._collections[collection][id] = orjson.dumps(document)


class MemoryBlobStore:
    """In-process blob storage keyed by path."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    async def upload(self, path: str, data: bytes) -> None:
        self._blobs[path] = bytes(data)

    async def download(self, path: str) -> bytes:
        try:
            return self._blobs[path]
        except KeyError:
            raise RecordNotFound(path) from None

    async def delete(self, path: str) -> None:
        self._blobs.pop(path, None)

    def __contains__(self, path: object) -> bool:
        return path in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)
