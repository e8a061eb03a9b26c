"""
Entity store for the commerce backend.

Each collection holds plain documents (dicts). ``MongoEntityStore`` is the
production backend; ``MemoryEntityStore`` keeps the same contract in process
and is used when no database is configured and by the test suite.

Documents leave the store in the API shape: ``_id`` is replaced by a string
``id``. Every document carries ``created_at``, ``updated_at`` and an integer
``version`` that guards read-modify-write cycles (see ``mutate_document``).
"""

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from config import Settings
from errors import ConcurrentUpdateError, DuplicateError, InvalidArgumentError, NotFoundError, StoreError
from logging_config import get_logger

logger = get_logger("database")

Document = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]

_PROTECTED_FIELDS = ("_id", "id", "version", "created_at")

# Unique keys per collection; enforced by a Mongo index or by the memory backend
UNIQUE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "user": ("username",),
    "category": ("name",),
}


# Utilities

def to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond digits; MongoDB stores datetimes at millisecond precision."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def utcnow() -> datetime:
    return to_millis(datetime.now(timezone.utc))


def parse_oid(id_str: Any) -> Optional[ObjectId]:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        return None


def oid(id_str: str) -> ObjectId:
    value = parse_oid(id_str)
    if value is None:
        raise InvalidArgumentError("Invalid id")
    return value


def to_object_ids(ids: Iterable[str]) -> List[ObjectId]:
    return [oid(i) for i in ids]


def serialize(doc):
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


def _as_dict(data: Union[BaseModel, Document]) -> Document:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return dict(data)


def _kind(collection: str) -> str:
    return collection.capitalize()


def _version_query(expected_version: int) -> Any:
    # Documents written before versioning have no field at all
    if expected_version == 0:
        return {"$in": [0, None]}
    return expected_version


class EntityStore(ABC):
    """Key lookups, filtered scans, whole-document writes. Nothing spans collections."""

    @abstractmethod
    def find_by_id(self, collection: str, entity_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def find(
        self,
        collection: str,
        query: Optional[Document] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Document]:
        ...

    @abstractmethod
    def count_documents(self, collection: str, query: Optional[Document] = None) -> int:
        ...

    @abstractmethod
    def create(self, collection: str, data: Union[BaseModel, Document]) -> Document:
        ...

    @abstractmethod
    def update_by_id(
        self,
        collection: str,
        entity_id: str,
        changes: Document,
        expected_version: Optional[int] = None,
    ) -> Document:
        """Apply ``changes`` and bump ``version``.

        With ``expected_version`` the write only lands if the stored version
        still matches; otherwise ``ConcurrentUpdateError`` is raised.
        """

    @abstractmethod
    def delete_by_id(self, collection: str, entity_id: str) -> bool:
        ...

    @abstractmethod
    def delete_many(self, collection: str, query: Document) -> int:
        ...

    @abstractmethod
    def health(self) -> Document:
        ...

    def find_one(self, collection: str, query: Document) -> Optional[Document]:
        found = self.find(collection, query, limit=1)
        return found[0] if found else None

    def ensure_indexes(self) -> None:
        pass

    @staticmethod
    def _new_document(data: Union[BaseModel, Document]) -> Document:
        doc = _as_dict(data)
        doc.pop("id", None)
        now = utcnow()
        doc["_id"] = ObjectId()
        doc["created_at"] = now
        doc["updated_at"] = now
        doc["version"] = 1
        return doc

    @staticmethod
    def _clean_changes(changes: Document) -> Document:
        return {k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS}


class MongoEntityStore(EntityStore):
    def __init__(self, url: str, database_name: str, timeout_ms: int = 5000):
        self.client = MongoClient(
            url,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        self.db = self.client[database_name]

    def _call(self, operation: str, collection: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except DuplicateKeyError as e:
            raise DuplicateError(f"Duplicate key in {collection}") from e
        except PyMongoError as e:
            logger.error("store_error", operation=operation, collection=collection, error=str(e)[:200])
            raise StoreError(f"Store failure during {operation} on {collection}") from e

    def find_by_id(self, collection, entity_id):
        _id = parse_oid(entity_id)
        if _id is None:
            return None
        doc = self._call("find_by_id", collection, lambda: self.db[collection].find_one({"_id": _id}))
        return serialize(doc)

    def find(self, collection, query=None, sort=None, skip=0, limit=0):
        def run():
            cursor = self.db[collection].find(query or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return [serialize(d) for d in cursor]

        return self._call("find", collection, run)

    def count_documents(self, collection, query=None):
        return self._call("count_documents", collection, lambda: self.db[collection].count_documents(query or {}))

    def create(self, collection, data):
        doc = self._new_document(data)
        self._call("create", collection, lambda: self.db[collection].insert_one(doc))
        return serialize(doc)

    def update_by_id(self, collection, entity_id, changes, expected_version=None):
        _id = parse_oid(entity_id)
        if _id is None:
            raise NotFoundError(_kind(collection), entity_id)
        query: Document = {"_id": _id}
        if expected_version is not None:
            query["version"] = _version_query(expected_version)
        update = {
            "$set": {**self._clean_changes(changes), "updated_at": utcnow()},
            "$inc": {"version": 1},
        }
        doc = self._call(
            "update_by_id",
            collection,
            lambda: self.db[collection].find_one_and_update(query, update, return_document=ReturnDocument.AFTER),
        )
        if doc is None:
            exists = self._call(
                "count_documents", collection, lambda: self.db[collection].count_documents({"_id": _id}, limit=1)
            )
            if exists and expected_version is not None:
                raise ConcurrentUpdateError(collection, entity_id, expected_version)
            raise NotFoundError(_kind(collection), entity_id)
        return serialize(doc)

    def delete_by_id(self, collection, entity_id):
        _id = parse_oid(entity_id)
        if _id is None:
            return False
        result = self._call("delete_by_id", collection, lambda: self.db[collection].delete_one({"_id": _id}))
        return result.deleted_count == 1

    def delete_many(self, collection, query):
        result = self._call("delete_many", collection, lambda: self.db[collection].delete_many(query))
        return result.deleted_count

    def ensure_indexes(self):
        for collection, fields in UNIQUE_FIELDS.items():
            for field in fields:
                self._call("create_index", collection, lambda: self.db[collection].create_index(field, unique=True))
        self._call(
            "create_index",
            "order",
            lambda: self.db["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)]),
        )

    def health(self):
        self._call("ping", "admin", lambda: self.client.admin.command("ping"))
        collections = self._call("list_collection_names", "*", self.db.list_collection_names)
        return {"backend": "mongodb", "collections": collections[:10]}


# Query matching for the in-process backend. Covers the operators this service issues.

def _cmp(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value, operand):
        if value is None:
            return False
        return op(value, operand)

    return check


def _in(value, operand):
    if isinstance(value, list):
        return any(v in operand for v in value)
    return value in operand


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda value, operand: value == operand,
    "$ne": lambda value, operand: value != operand,
    "$in": _in,
    "$nin": lambda value, operand: not _in(value, operand),
    "$gt": _cmp(lambda a, b: a > b),
    "$gte": _cmp(lambda a, b: a >= b),
    "$lt": _cmp(lambda a, b: a < b),
    "$lte": _cmp(lambda a, b: a <= b),
    "$exists": lambda value, operand: (value is not None) == bool(operand),
}


def _matches(doc: Document, query: Document) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue
        value = doc.get(key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, operand in cond.items():
                if op not in _OPERATORS:
                    raise StoreError(f"Unsupported query operator: {op}")
                if not _OPERATORS[op](value, operand):
                    return False
        elif isinstance(value, list) and not isinstance(cond, list):
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


def _sort_documents(docs: List[Document], sort: SortSpec) -> List[Document]:
    # Stable sorts applied from the least significant key
    for field, direction in reversed(list(sort)):
        present = [d for d in docs if d.get(field) is not None]
        missing = [d for d in docs if d.get(field) is None]
        present.sort(key=lambda d: d[field], reverse=direction == DESCENDING)
        docs = missing + present if direction == ASCENDING else present + missing
    return docs


class MemoryEntityStore(EntityStore):
    def __init__(self):
        self._collections: Dict[str, Dict[ObjectId, Document]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[ObjectId, Document]:
        return self._collections.setdefault(name, {})

    @staticmethod
    def _out(doc: Document) -> Document:
        return serialize(copy.deepcopy(doc))

    def _check_unique(self, collection: str, doc: Document) -> None:
        for field in UNIQUE_FIELDS.get(collection, ()):
            value = doc.get(field)
            if value is None:
                continue
            for other in self._collection(collection).values():
                if other["_id"] != doc["_id"] and other.get(field) == value:
                    raise DuplicateError(f"Duplicate key in {collection}: {field}={value}")

    def find_by_id(self, collection, entity_id):
        _id = parse_oid(entity_id)
        with self._lock:
            doc = self._collection(collection).get(_id)
            return self._out(doc) if doc is not None else None

    def find(self, collection, query=None, sort=None, skip=0, limit=0):
        with self._lock:
            docs = [d for d in self._collection(collection).values() if _matches(d, query or {})]
            if sort:
                docs = _sort_documents(docs, sort)
            if skip:
                docs = docs[skip:]
            if limit:
                docs = docs[:limit]
            return [self._out(d) for d in docs]

    def count_documents(self, collection, query=None):
        with self._lock:
            return sum(1 for d in self._collection(collection).values() if _matches(d, query or {}))

    def create(self, collection, data):
        doc = self._new_document(data)
        with self._lock:
            self._check_unique(collection, doc)
            self._collection(collection)[doc["_id"]] = copy.deepcopy(doc)
        return serialize(doc)

    def update_by_id(self, collection, entity_id, changes, expected_version=None):
        _id = parse_oid(entity_id)
        with self._lock:
            current = self._collection(collection).get(_id)
            if current is None:
                raise NotFoundError(_kind(collection), entity_id)
            if expected_version is not None and current.get("version", 0) != expected_version:
                raise ConcurrentUpdateError(collection, entity_id, expected_version)
            updated = {**current, **copy.deepcopy(self._clean_changes(changes))}
            updated["updated_at"] = utcnow()
            updated["version"] = current.get("version", 0) + 1
            self._check_unique(collection, updated)
            self._collection(collection)[_id] = updated
            return self._out(updated)

    def delete_by_id(self, collection, entity_id):
        _id = parse_oid(entity_id)
        with self._lock:
            return self._collection(collection).pop(_id, None) is not None

    def delete_many(self, collection, query):
        with self._lock:
            docs = self._collection(collection)
            doomed = [k for k, d in docs.items() if _matches(d, query)]
            for key in doomed:
                del docs[key]
            return len(doomed)

    def health(self):
        with self._lock:
            return {"backend": "memory", "collections": sorted(self._collections)[:10]}


def build_store(settings: Settings) -> EntityStore:
    if settings.database_url and settings.database_name:
        store = MongoEntityStore(settings.database_url, settings.database_name, settings.store_timeout_ms)
        logger.info("store_configured", backend="mongodb", database=settings.database_name)
        return store
    logger.warning("store_not_configured", backend="memory", reason="DATABASE_URL or DATABASE_NAME not set")
    return MemoryEntityStore()


def mutate_document(
    store: EntityStore,
    collection: str,
    entity_id: str,
    mutate: Callable[[Document], Optional[Document]],
    attempts: int = 5,
) -> Document:
    """Read-modify-write one document under its version guard.

    ``mutate`` receives a fresh copy of the document and returns the fields to
    write, or ``None`` when nothing needs to change. It is re-run from a fresh
    read whenever another writer got in between, up to ``attempts`` times.
    Errors raised by ``mutate`` itself propagate immediately.
    """

    def once() -> Document:
        doc = store.find_by_id(collection, entity_id)
        if doc is None:
            raise NotFoundError(_kind(collection), entity_id)
        changes = mutate(doc)
        if not changes:
            return doc
        return store.update_by_id(collection, entity_id, changes, expected_version=doc.get("version", 0))

    retrying = Retrying(
        retry=retry_if_exception_type(ConcurrentUpdateError),
        stop=stop_after_attempt(attempts),
        wait=wait_random(0, 0.05),
        before_sleep=lambda state: logger.info(
            "update_conflict_retry", collection=collection, id=entity_id, attempt=state.attempt_number
        ),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            result = once()
    return result
