"""
Document store access.

The workspace talks to its backing store through ``DocumentStore``: an
owner-scoped query plus insert / patch / remove by id. ``MongoDocumentStore``
is the production backend; ``MemoryDocumentStore`` keeps everything in the
process for local runs and tests.

Records cross this boundary as flat dicts with an ``id`` key.
"""
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

from config import get_settings
from errors import RecordNotFoundError
from logging_config import get_logger

logger = get_logger("database")


def new_id() -> str:
    return str(ObjectId())


def _with_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


class DocumentStore(ABC):
    @abstractmethod
    async def query(self, collection: str, owner_id: str, order_by: str,
                    descending: bool = True) -> List[Dict[str, Any]]:
        """All records of ``collection`` whose user_id is ``owner_id``, sorted."""

    @abstractmethod
    async def insert(self, collection: str, record: Dict[str, Any]) -> str:
        """Write a new record and return its generated id."""

    @abstractmethod
    async def patch(self, collection: str, record_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def remove(self, collection: str, record_id: str) -> None:
        ...

    @abstractmethod
    async def find_one(self, collection: str, **criteria: Any) -> Optional[Dict[str, Any]]:
        ...


class MongoDocumentStore(DocumentStore):
    """pymongo-backed store. Blocking driver calls run in the threadpool."""

    def __init__(self, database: Database):
        self.db = database

    async def query(self, collection, owner_id, order_by, descending=True):
        def _run():
            cursor = self.db[collection].find({"user_id": owner_id}).sort(
                order_by, DESCENDING if descending else ASCENDING
            )
            return [_with_id(d) for d in cursor]

        return await run_in_threadpool(_run)

    async def insert(self, collection, record):
        doc = {k: v for k, v in record.items() if k != "id"}
        doc["_id"] = new_id()
        await run_in_threadpool(self.db[collection].insert_one, doc)
        return doc["_id"]

    async def patch(self, collection, record_id, fields):
        result = await run_in_threadpool(
            self.db[collection].update_one, {"_id": record_id}, {"$set": fields}
        )
        if result.matched_count == 0:
            raise RecordNotFoundError(collection, record_id)

    async def remove(self, collection, record_id):
        result = await run_in_threadpool(self.db[collection].delete_one, {"_id": record_id})
        if result.deleted_count == 0:
            raise RecordNotFoundError(collection, record_id)

    async def find_one(self, collection, **criteria):
        if "id" in criteria:
            criteria["_id"] = criteria.pop("id")
        doc = await run_in_threadpool(self.db[collection].find_one, criteria)
        return _with_id(doc) if doc else None


class MemoryDocumentStore(DocumentStore):
    """In-process store with the same contract as the Mongo one."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    async def query(self, collection, owner_id, order_by, descending=True):
        # newest insert first among equal sort keys
        docs = [d for d in reversed(list(self._collection(collection).values()))
                if d.get("user_id") == owner_id]
        docs.sort(key=lambda d: (d.get(order_by) is not None, d.get(order_by) or ""),
                  reverse=descending)
        return [copy.deepcopy(d) for d in docs]

    async def insert(self, collection, record):
        record_id = new_id()
        doc = copy.deepcopy({k: v for k, v in record.items() if k != "id"})
        doc["id"] = record_id
        self._collection(collection)[record_id] = doc
        return record_id

    async def patch(self, collection, record_id, fields):
        docs = self._collection(collection)
        if record_id not in docs:
            raise RecordNotFoundError(collection, record_id)
        docs[record_id].update(copy.deepcopy(fields))

    async def remove(self, collection, record_id):
        if self._collection(collection).pop(record_id, None) is None:
            raise RecordNotFoundError(collection, record_id)

    async def find_one(self, collection, **criteria):
        for doc in self._collection(collection).values():
            if all(doc.get(k) == v for k, v in criteria.items()):
                return copy.deepcopy(doc)
        return None


# Module-level connection, configured from the environment
db: Optional[Database] = None
_settings = get_settings()
if _settings.database_url and _settings.database_name:
    _client = MongoClient(_settings.database_url)
    db = _client[_settings.database_name]


def get_document_store() -> DocumentStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore()
    if db is None:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set for the mongo store")
    return MongoDocumentStore(db)
