# ticketing_engine/store.py
"""
Document store with optimistic concurrency.

Every document carries an integer ``version``. Writers read a document,
compute the new state and call ``conditional_write`` with the version they
read; the write only lands if nobody else wrote in between. ``mutate`` wraps
that loop and retries on conflict.
"""
import asyncio
import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from ticketing_engine.errors import StoreContention

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


class VersionConflict(Exception):
    """The document changed since it was read."""


class DuplicateDocument(Exception):
    """A document with this id already exists."""


class ConditionalStore(ABC):
    max_retries: int = 50

    @abstractmethod
    async def read(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def insert(self, collection: str, doc: Document) -> Document:
        """Insert a new document with version 1. Raises DuplicateDocument."""

    @abstractmethod
    async def conditional_write(self, collection: str, doc: Document, expected_version: int) -> Document:
        """Replace the document only if its stored version is expected_version."""

    @abstractmethod
    async def find(self, collection: str, filters: Optional[Document] = None,
                   limit: Optional[int] = None) -> List[Document]:
        """Equality match on top-level fields."""

    async def mutate(self, collection: str, doc_id: str,
                     change: Callable[[Document], Optional[Document]]) -> Optional[Document]:
        """
        Read-modify-write a single document until the write wins.

        ``change`` receives a copy of the current document and returns the new
        one, or None to leave it untouched. It may raise to abort; nothing is
        written in that case. Returns the stored document, or None when the
        document does not exist.
        """
        for attempt in range(self.max_retries):
            current = await self.read(collection, doc_id)
            if current is None:
                return None
            updated = change(copy.deepcopy(current))
            if updated is None:
                return current
            try:
                return await self.conditional_write(collection, updated, current["version"])
            except VersionConflict:
                logger.debug("Version conflict on %s/%s (attempt %d)", collection, doc_id, attempt + 1)
        logger.warning("Giving up on %s/%s after %d conflicting writes", collection, doc_id, self.max_retries)
        raise StoreContention()


class MongoConditionalStore(ConditionalStore):
    """Conditional writes as ``replace_one({"_id": id, "version": v})`` on motor."""

    def __init__(self, database, max_retries: int = 50):
        self.database = database
        self.max_retries = max_retries

    @staticmethod
    def _strip(doc: Optional[Document]) -> Optional[Document]:
        if doc is not None:
            doc.pop("_id", None)
        return doc

    async def read(self, collection, doc_id):
        doc = await self.database.get_collection(collection).find_one({"_id": doc_id})
        return self._strip(doc)

    async def insert(self, collection, doc):
        stored = {**doc, "version": 1}
        try:
            await self.database.get_collection(collection).insert_one({**stored, "_id": doc["id"]})
        except DuplicateKeyError:
            raise DuplicateDocument(f"{collection}/{doc['id']}")
        return stored

    async def conditional_write(self, collection, doc, expected_version):
        stored = {**doc, "version": expected_version + 1}
        result = await self.database.get_collection(collection).replace_one(
            {"_id": doc["id"], "version": expected_version},
            {**stored, "_id": doc["id"]},
        )
        if result.matched_count == 0:
            raise VersionConflict(f"{collection}/{doc['id']}")
        return stored

    async def find(self, collection, filters=None, limit=None):
        cursor = self.database.get_collection(collection).find(filters or {})
        docs = await cursor.to_list(length=limit)
        return [self._strip(doc) for doc in docs]


class MemoryConditionalStore(ConditionalStore):
    """
    In-process store with the same semantics as the Mongo adapter.

    Each call yields to the event loop once, the way a network round trip
    would, so concurrent tasks interleave between read and write.
    """

    def __init__(self, max_retries: int = 50):
        self.max_retries = max_retries
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.Lock()

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    async def read(self, collection, doc_id):
        with self._lock:
            doc = copy.deepcopy(self._collection(collection).get(doc_id))
        await asyncio.sleep(0)
        return doc

    async def insert(self, collection, doc):
        await asyncio.sleep(0)
        stored = {**copy.deepcopy(doc), "version": 1}
        with self._lock:
            docs = self._collection(collection)
            if doc["id"] in docs:
                raise DuplicateDocument(f"{collection}/{doc['id']}")
            docs[doc["id"]] = stored
        return copy.deepcopy(stored)

    async def conditional_write(self, collection, doc, expected_version):
        await asyncio.sleep(0)
        stored = {**copy.deepcopy(doc), "version": expected_version + 1}
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc["id"])
            if current is None or current["version"] != expected_version:
                raise VersionConflict(f"{collection}/{doc['id']}")
            docs[doc["id"]] = stored
        return copy.deepcopy(stored)

    async def find(self, collection, filters=None, limit=None):
        filters = filters or {}
        with self._lock:
            matches = [
                copy.deepcopy(doc)
                for doc in self._collection(collection).values()
                if all(doc.get(key) == value for key, value in filters.items())
            ]
        await asyncio.sleep(0)
        return matches[:limit] if limit else matches
