"""
Record store: four collections with primary keys and secondary indexes.

- users       key "uid" (caller supplied), unique index on email
- products    key "id" (auto-increment), indexes on userId, category
- orders      key "id" (auto-increment), indexes on userId, status
- activities  key "id" (auto-increment), indexes on userId, timestamp

Every operation is atomic for the single record it touches. There is no
cross-collection transaction: a caller that writes a product and then bumps
the owner's counters can be interrupted in between. StatsAggregator.reconcile
closes that window.
"""

import contextlib
import json
import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional

import mongomock
from pymongo import ASCENDING, ReturnDocument

from database import DUPLICATE_KEY_ERRORS, STORAGE_ERRORS, open_database
from errors import DuplicateKeyError, NotFoundError

logger = logging.getLogger(__name__)

USERS = "users"
PRODUCTS = "products"
ORDERS = "orders"
ACTIVITIES = "activities"

# Import order: owners first so references resolve for readers
COLLECTION_ORDER = [USERS, PRODUCTS, ORDERS, ACTIVITIES]

COLLECTIONS = {
    USERS: {"key": "uid", "auto": False, "indexes": {"email": True}},
    PRODUCTS: {"key": "id", "auto": True, "indexes": {"userId": False, "category": False}},
    ORDERS: {"key": "id", "auto": True, "indexes": {"userId": False, "status": False}},
    ACTIVITIES: {"key": "id", "auto": True, "indexes": {"userId": False, "timestamp": False}},
}

COUNTERS = "counters"
NO_ID = {"_id": 0}


def now_ms() -> int:
    return int(time.time() * 1000)


def value_at(doc: Optional[dict], path: str):
    for part in path.split("."):
        if not isinstance(doc, dict):
            return None
        doc = doc.get(part)
    return doc


class RecordStore:
    def __init__(self, db=None):
        self.db = db if db is not None else open_database()
        # mongomock mutates documents in place without locking; a real server does its own
        self._lock = threading.RLock() if isinstance(self.db, mongomock.Database) else contextlib.nullcontext()
        self._ensure_indexes()

    # ------------------------- schema -------------------------

    def _ensure_indexes(self):
        for name, layout in COLLECTIONS.items():
            col = self.db[name]
            col.create_index([(layout["key"], ASCENDING)], unique=True)
            for field, unique in layout["indexes"].items():
                if unique:
                    col.create_index([(field, ASCENDING)], unique=True, sparse=True)
                else:
                    col.create_index([(field, ASCENDING)])

    def _layout(self, collection: str) -> dict:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}")

    def key_field(self, collection: str) -> str:
        return self._layout(collection)["key"]

    def _unique_fields(self, collection: str) -> List[str]:
        return [f for f, unique in self._layout(collection)["indexes"].items() if unique]

    def _next_id(self, collection: str) -> int:
        doc = self.db[COUNTERS].find_one_and_update(
            {"_id": collection},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])

    def _bump_counter(self, collection: str, at_least: int):
        self.db[COUNTERS].update_one({"_id": collection}, {"$max": {"seq": at_least}}, upsert=True)

    # ------------------------- CRUD -------------------------

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        layout = self._layout(collection)
        key = layout["key"]
        doc = {k: v for k, v in record.items() if k != "_id"}
        # Sparse unique indexes skip absent fields but still index explicit nulls
        for field in self._unique_fields(collection):
            if doc.get(field) is None:
                doc.pop(field, None)
        with self._lock:
            if layout["auto"]:
                doc[key] = self._next_id(collection)
            elif not doc.get(key):
                raise ValueError(f"{collection} records must carry a {key!r}")
            ts = now_ms()
            doc.setdefault("createdAt", ts)
            if collection == USERS:
                doc.setdefault("lastActive", ts)
            else:
                doc.setdefault("updatedAt", ts)
            self._insert(collection, doc)
        logger.debug("Created %s %s", collection, doc[key])
        return doc

    def _insert(self, collection: str, doc: Dict[str, Any]):
        try:
            # insert_one adds _id to the dict it is given
            self.db[collection].insert_one(dict(doc))
        except DUPLICATE_KEY_ERRORS as e:
            field, value = self._duplicate_field(collection, doc, e)
            raise DuplicateKeyError(collection, field, value) from e

    def _duplicate_field(self, collection: str, doc: dict, error) -> tuple:
        layout = self._layout(collection)
        message = str(error)
        for field in self._unique_fields(collection):
            if field in message:
                return field, doc.get(field)
        # Fall back to probing each unique field
        for field in [layout["key"]] + self._unique_fields(collection):
            if doc.get(field) is not None and self.db[collection].count_documents({field: doc.get(field)}, limit=1):
                return field, doc.get(field)
        return layout["key"], doc.get(layout["key"])

    def get(self, collection: str, key) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.db[collection].find_one({self.key_field(collection): key}, NO_ID)

    def get_all_by(self, collection: str, index_name: str, value) -> List[Dict[str, Any]]:
        self._check_index(collection, index_name)
        return self._find(collection, {index_name: value})

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        self._layout(collection)
        return self._find(collection, {})

    def find(self, collection: str, query: dict, sort: Optional[list] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self._layout(collection)
        return self._find(collection, query, sort, limit)

    def count_by(self, collection: str, index_name: str, value) -> int:
        self._check_index(collection, index_name)
        with self._lock:
            return self.db[collection].count_documents({index_name: value})

    def _check_index(self, collection: str, index_name: str):
        layout = self._layout(collection)
        if index_name != layout["key"] and index_name not in layout["indexes"]:
            raise ValueError(f"{collection} has no index on {index_name!r}")

    def _find(self, collection: str, query: dict, sort: Optional[list] = None, limit: Optional[int] = None):
        cursor = self.db[collection].find(query, NO_ID)
        # Natural _id order is insertion order
        cursor = cursor.sort(sort or [("_id", ASCENDING)])
        if limit:
            cursor = cursor.limit(limit)
        with self._lock:
            return list(cursor)

    def _stamp(self, collection: str, operations: dict, last_active: int = 0):
        ts = now_ms()
        if collection == USERS:
            operations["$max"] = {"lastActive": max(ts, last_active or 0)}
        else:
            operations.setdefault("$set", {})["updatedAt"] = ts
        return operations

    def _find_one_and_update(self, collection: str, query: dict, operations: dict):
        with self._lock:
            return self.db[collection].find_one_and_update(
                query, operations, projection=NO_ID, return_document=ReturnDocument.AFTER
            )

    def update(self, collection: str, key, partial: Dict[str, Any], expect: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Shallow-merge ``partial`` into the record stored under ``key``.

        Top-level keys replace the stored values; nested structures are
        replaced wholesale. A dotted key ("dashboard.recentActivity") replaces
        only that nested field. ``updatedAt`` is refreshed (``lastActive`` for
        users, never moving backwards).

        With ``expect`` the write only happens when every expected field still
        holds the given value; a mismatch returns None instead of raising.
        """
        key_name = self.key_field(collection)
        changes = {k: v for k, v in partial.items() if k != "_id"}
        if key_name in changes and changes.pop(key_name) != key:
            raise ValueError(f"{collection}.{key_name} is immutable")

        last_active = changes.pop("lastActive", 0) if collection == USERS else 0
        operations = {"$set": changes} if changes else {}
        self._stamp(collection, operations, last_active)

        query = {key_name: key}
        if expect:
            query.update(expect)
        try:
            doc = self._find_one_and_update(collection, query, operations)
        except DUPLICATE_KEY_ERRORS as e:
            field, value = self._duplicate_field(collection, changes, e)
            raise DuplicateKeyError(collection, field, value) from e
        if doc is None:
            if not expect or self.get(collection, key) is None:
                raise NotFoundError(collection, key)
            logger.debug("Skipped %s %s update: expected %s", collection, key, expect)
            return None
        logger.debug("Updated %s %s fields=%s", collection, key, sorted(partial))
        return doc

    def increment(self, collection: str, key, deltas: Dict[str, float], fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Atomically add ``deltas`` to numeric fields (dotted paths allowed),
        never letting a field drop below zero, and ``$set`` any ``fields``.

        Increments go straight to the server as ``$inc``, so concurrent
        callers never lose each other's updates. Decrements are a
        compare-and-set loop: subtract when the stored value covers the
        delta, otherwise pin the field to zero.
        """
        key_name = self.key_field(collection)
        rises = {p: d for p, d in deltas.items() if d >= 0}
        operations = {}
        if rises:
            operations["$inc"] = rises
        if fields:
            operations["$set"] = dict(fields)
        doc = self._find_one_and_update(collection, {key_name: key}, self._stamp(collection, operations))
        if doc is None:
            raise NotFoundError(collection, key)

        for path, delta in deltas.items():
            if delta >= 0:
                continue
            while True:
                doc = self._find_one_and_update(
                    collection, {key_name: key, path: {"$gte": -delta}}, {"$inc": {path: delta}}
                )
                if doc is not None:
                    break
                doc = self._find_one_and_update(
                    collection,
                    {key_name: key, "$or": [{path: {"$lt": -delta}}, {path: None}]},
                    {"$set": {path: 0}},
                )
                if doc is not None:
                    break
                current = self.get(collection, key)
                if current is None:
                    raise NotFoundError(collection, key)
                if not isinstance(value_at(current, path), (int, float)):
                    doc = self._find_one_and_update(collection, {key_name: key}, {"$set": {path: 0}})
                    break
                # Another writer moved the value between the two guards; retry
        logger.debug("Incremented %s %s %s", collection, key, deltas)
        return doc

    def add_to_set(self, collection: str, key, field: str, value) -> bool:
        """Append ``value`` to the array ``field`` unless present. Returns whether it was added."""
        with self._lock:
            res = self.db[collection].update_one({self.key_field(collection): key}, {"$addToSet": {field: value}})
        if not res.matched_count:
            raise NotFoundError(collection, key)
        return bool(res.modified_count)

    def delete(self, collection: str, key) -> bool:
        with self._lock:
            res = self.db[collection].delete_one({self.key_field(collection): key})
        if res.deleted_count:
            logger.debug("Deleted %s %s", collection, key)
        return bool(res.deleted_count)

    def delete_where(self, collection: str, query: dict) -> int:
        self._layout(collection)
        with self._lock:
            res = self.db[collection].delete_many(query)
        return res.deleted_count

    # ------------------------- bulk -------------------------

    def clear_all(self):
        with self._lock:
            for name in COLLECTION_ORDER:
                self.db[name].delete_many({})
            self.db[COUNTERS].delete_many({})
        logger.info("Cleared all collections")

    def export_all(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: self.get_all(name) for name in COLLECTION_ORDER}

    def validate_snapshot(self, snapshot: Dict[str, Iterable[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Check a snapshot against the collection layout without writing.

        Raises ValueError for malformed records and DuplicateKeyError for
        repeated primary keys or unique-index values. Returns the records
        per collection as lists.
        """
        if not isinstance(snapshot, dict):
            raise ValueError("Snapshot must be an object keyed by collection")
        unknown = set(snapshot) - set(COLLECTION_ORDER)
        if unknown:
            raise ValueError(f"Unknown collections in snapshot: {sorted(unknown)}")
        checked = {}
        for name in COLLECTION_ORDER:
            layout = self._layout(name)
            key = layout["key"]
            records = list(snapshot.get(name) or [])
            seen = {field: set() for field in [key] + self._unique_fields(name)}
            for record in records:
                if not isinstance(record, dict):
                    raise ValueError(f"{name} records must be objects")
                if not layout["auto"] and not record.get(key):
                    raise ValueError(f"{name} records must carry a {key!r}")
                for field, values in seen.items():
                    value = record.get(field)
                    if value is None:
                        continue
                    if value in values:
                        raise DuplicateKeyError(name, field, value)
                    values.add(value)
            checked[name] = records
        return checked

    def import_all(self, snapshot: Dict[str, Iterable[Dict[str, Any]]]) -> Dict[str, int]:
        """
        Replace every collection with the snapshot contents as one unit.

        The snapshot is validated before anything is cleared. Records are
        inserted as-is, in users/products/orders/activities order. Stats side
        effects are not replayed and references are not validated. If a write
        fails part way the previous contents are put back.
        """
        records = self.validate_snapshot(snapshot)
        with self._lock:
            previous = self.export_all()
            counters = list(self.db[COUNTERS].find())
            self.clear_all()
            try:
                counts = self._load(records)
            except (DuplicateKeyError,) + STORAGE_ERRORS:
                logger.exception("Import failed, restoring previous contents")
                self.clear_all()
                self._load(previous)
                for counter in counters:
                    self._bump_counter(counter["_id"], counter.get("seq", 0))
                raise
        logger.info("Imported snapshot %s", counts)
        return counts

    def _load(self, records: Dict[str, List[Dict[str, Any]]]) -> Dict[str, int]:
        counts = {}
        for name in COLLECTION_ORDER:
            layout = self._layout(name)
            key = layout["key"]
            rows = records.get(name) or []
            top = max((r[key] for r in rows if layout["auto"] and isinstance(r.get(key), int)), default=0)
            if top:
                self._bump_counter(name, top)
            for record in rows:
                doc = {k: v for k, v in record.items() if k != "_id"}
                if layout["auto"] and not isinstance(doc.get(key), int):
                    doc[key] = self._next_id(name)
                self._insert(name, doc)
            counts[name] = len(rows)
        return counts

    def dump_json(self, indent: int = 2) -> str:
        return json.dumps(self.export_all(), indent=indent, ensure_ascii=False)

    def load_json(self, text: str) -> Dict[str, int]:
        return self.import_all(json.loads(text))
