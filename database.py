"""
Document store access.

``db`` is the raw pymongo database (None when DATABASE_URL/DATABASE_NAME are not
set). The workflow code talks to a store adapter instead of ``db`` directly:
``MongoStore`` in deployments, ``MemoryStore`` for local runs and tests. Both
return documents as plain dicts with a string ``id`` key.
"""
import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from errors import StoreUnavailable

logger = logging.getLogger(__name__)

client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = client[config.DATABASE_NAME]

ChangeCallback = Callable[[Dict[str, Any]], None]
Sort = List[Tuple[str, int]]


def _now():
    return datetime.now(timezone.utc)


def _to_dict(data) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def _stamped(data) -> Dict[str, Any]:
    doc = _to_dict(data)
    now = _now()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    return doc


# ------------------ MongoDB ------------------

def _key(doc_id: str):
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id) and len(doc_id) == 24:
        return ObjectId(doc_id)
    return doc_id


def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


class MongoStore:
    """Store adapter over a pymongo database."""

    def __init__(self, database, read_retries: int = config.STORE_READ_RETRIES):
        self.db = database
        self.read_retries = read_retries

    def _read(self, op: Callable[[], Any]):
        last = None
        for attempt in range(self.read_retries + 1):
            try:
                return op()
            except PyMongoError as e:
                last = e
                logger.warning("Store read failed (attempt %d): %s", attempt + 1, e)
        raise StoreUnavailable(f"Store unavailable: {str(last)[:80]}")

    def _write(self, op: Callable[[], Any]):
        try:
            return op()
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            logger.error("Store write failed: %s", e)
            raise StoreUnavailable(f"Store unavailable: {str(e)[:80]}")

    def create(self, collection: str, data, doc_id: Optional[str] = None) -> str:
        doc = _stamped(data)
        if doc_id is not None:
            doc["_id"] = _key(doc_id)
        result = self._write(lambda: self.db[collection].insert_one(doc))
        return str(result.inserted_id)

    def create_if_absent(self, collection: str, doc_id: str, data) -> bool:
        doc = _stamped(data)
        doc["_id"] = _key(doc_id)
        try:
            self._write(lambda: self.db[collection].insert_one(doc))
        except DuplicateKeyError:
            return False
        return True

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return _out(self._read(lambda: self.db[collection].find_one({"_id": _key(doc_id)})))

    def update(self, collection: str, doc_id: str, data, merge: bool = True, upsert: bool = False) -> bool:
        changes = _to_dict(data)
        changes["updated_at"] = _now()
        coll = self.db[collection]
        if merge:
            update = {"$set": changes}
            if upsert:
                update["$setOnInsert"] = {"created_at": changes["updated_at"]}
            result = self._write(lambda: coll.update_one({"_id": _key(doc_id)}, update, upsert=upsert))
        else:
            result = self._write(lambda: coll.replace_one({"_id": _key(doc_id)}, changes, upsert=upsert))
        return result.matched_count > 0 or result.upserted_id is not None

    def update_if(self, collection: str, doc_id: str, conditions: Dict[str, Any], data) -> Optional[Dict[str, Any]]:
        changes = _to_dict(data)
        changes["updated_at"] = _now()
        query = {"_id": _key(doc_id), **conditions}
        doc = self._write(lambda: self.db[collection].find_one_and_update(
            query, {"$set": changes}, return_document=ReturnDocument.AFTER
        ))
        return _out(doc)

    def update_many(self, collection: str, filters: Dict[str, Any], data) -> int:
        changes = _to_dict(data)
        result = self._write(lambda: self.db[collection].update_many(filters, {"$set": changes}))
        return result.modified_count

    def delete(self, collection: str, doc_id: str) -> bool:
        result = self._write(lambda: self.db[collection].delete_one({"_id": _key(doc_id)}))
        return result.deleted_count > 0

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        def op():
            cursor = self.db[collection].find(filters or {})
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return [_out(d) for d in cursor]
        return self._read(op)

    def subscribe(self, collection: str, callback: ChangeCallback) -> Callable[[], None]:
        """Stream change events to ``callback`` from a background thread. Requires a replica set."""
        stop = threading.Event()
        holder = {}

        def run():
            try:
                with self.db[collection].watch(full_document="updateLookup") as stream:
                    holder["stream"] = stream
                    for change in stream:
                        if stop.is_set():
                            break
                        event = {
                            "collection": collection,
                            "op": change.get("operationType"),
                            "id": str(change.get("documentKey", {}).get("_id")),
                            "document": _out(change.get("fullDocument")),
                        }
                        try:
                            callback(event)
                        except Exception:
                            logger.exception("Change subscriber on %s failed", collection)
            except PyMongoError as e:
                if not stop.is_set():
                    logger.error("Change stream on %s stopped: %s", collection, e)

        thread = threading.Thread(target=run, name=f"watch-{collection}", daemon=True)
        thread.start()

        def unsubscribe():
            stop.set()
            stream = holder.get("stream")
            if stream is not None:
                stream.close()

        return unsubscribe


# ------------------ In-memory ------------------

_MISSING = object()


def _lookup(doc: Dict[str, Any], path: str):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for field, expected in (filters or {}).items():
        value = _lookup(doc, field)
        if value is _MISSING:
            value = None
        if isinstance(expected, dict):
            if "$in" in expected and value not in expected["$in"]:
                return False
            if "$ne" in expected and value == expected["$ne"]:
                return False
        elif isinstance(value, list) and not isinstance(expected, list):
            if expected not in value:
                return False
        elif value != expected:
            return False
    return True


def _sort_key(field):
    def key(doc):
        value = _lookup(doc, field)
        missing = value is _MISSING or value is None
        return (missing, None if missing else value)
    return key


class MemoryStore:
    """Process-local store with the same contract as MongoStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subscribers: List[Tuple[str, ChangeCallback]] = []

    def _coll(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(collection, {})

    def _notify(self, collection: str, op: str, doc_id: str, doc: Optional[Dict[str, Any]]):
        # the write is already committed; a failing subscriber must not fail it
        for name, callback in list(self._subscribers):
            if name != collection:
                continue
            try:
                callback({"collection": collection, "op": op, "id": doc_id, "document": copy.deepcopy(doc)})
            except Exception:
                logger.exception("Change subscriber on %s failed", collection)

    def create(self, collection: str, data, doc_id: Optional[str] = None) -> str:
        doc = _stamped(data)
        with self._lock:
            coll = self._coll(collection)
            doc_id = doc_id or uuid.uuid4().hex
            if doc_id in coll:
                raise DuplicateKeyError(f"duplicate id {doc_id}")
            doc["id"] = doc_id
            coll[doc_id] = doc
            snapshot = copy.deepcopy(doc)
        self._notify(collection, "insert", doc_id, snapshot)
        return doc_id

    def create_if_absent(self, collection: str, doc_id: str, data) -> bool:
        try:
            self.create(collection, data, doc_id=doc_id)
        except DuplicateKeyError:
            return False
        return True

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update(self, collection: str, doc_id: str, data, merge: bool = True, upsert: bool = False) -> bool:
        changes = _to_dict(data)
        changes["updated_at"] = _now()
        with self._lock:
            coll = self._coll(collection)
            existing = coll.get(doc_id)
            if existing is None and not upsert:
                return False
            if existing is None:
                doc = {"id": doc_id, "created_at": changes["updated_at"], **changes}
                op = "insert"
            elif merge:
                doc = {**existing, **changes}
                op = "update"
            else:
                doc = {"id": doc_id, **changes}
                op = "replace"
            coll[doc_id] = doc
            snapshot = copy.deepcopy(doc)
        self._notify(collection, op, doc_id, snapshot)
        return True

    def update_if(self, collection: str, doc_id: str, conditions: Dict[str, Any], data) -> Optional[Dict[str, Any]]:
        changes = _to_dict(data)
        changes["updated_at"] = _now()
        with self._lock:
            coll = self._coll(collection)
            existing = coll.get(doc_id)
            if existing is None or not _matches(existing, conditions):
                return None
            doc = {**existing, **changes}
            coll[doc_id] = doc
            snapshot = copy.deepcopy(doc)
        self._notify(collection, "update", doc_id, snapshot)
        return copy.deepcopy(snapshot)

    def update_many(self, collection: str, filters: Dict[str, Any], data) -> int:
        changes = _to_dict(data)
        touched = []
        with self._lock:
            coll = self._coll(collection)
            for doc_id, doc in coll.items():
                if _matches(doc, filters):
                    coll[doc_id] = {**doc, **changes}
                    touched.append((doc_id, copy.deepcopy(coll[doc_id])))
        for doc_id, snapshot in touched:
            self._notify(collection, "update", doc_id, snapshot)
        return len(touched)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            removed = self._coll(collection).pop(doc_id, None)
        if removed is None:
            return False
        self._notify(collection, "delete", doc_id, None)
        return True

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._coll(collection).values() if _matches(d, filters or {})]
        for field, direction in reversed(sort or []):
            docs.sort(key=_sort_key(field), reverse=direction < 0)
        return docs[:limit] if limit else docs

    def subscribe(self, collection: str, callback: ChangeCallback) -> Callable[[], None]:
        entry = (collection, callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe


_store = None


def get_store():
    global _store
    if _store is None:
        if db is not None:
            _store = MongoStore(db)
        else:
            logger.warning("DATABASE_URL/DATABASE_NAME not set, using in-memory store")
            _store = MemoryStore()
    return _store
