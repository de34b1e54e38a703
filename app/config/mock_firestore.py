"""
In-memory Firestore stand-in for local development and tests (USE_MOCK_DB=true).

Implements the subset of the google-cloud-firestore client surface the
services use:
- db.collection(name).document(id) with get/set/update/delete
- collection/query where(field, op, value), order_by, limit, offset, stream
- query.count() aggregation
- transactions: ref.get(transaction=t), query.stream(transaction=t),
  t.set/update/delete, committed with optimistic version checks

Every document carries a version counter. A transaction records the
version of every document it reads; at commit time any read document that
changed since (including one that was created or deleted) aborts the
attempt and the callback is retried. Writers to different documents never
block each other beyond the short commit critical section.

When constructed with a path, the store is loaded from and saved to a
JSON file (datetimes are written as ISO strings).
"""

import copy
import json
import logging
import os
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from google.api_core.exceptions import NotFound as DocumentNotFound

from app.core.exceptions import ConcurrentUpdateError

logger = logging.getLogger(__name__)

ASCENDING = "ASCENDING"
DESCENDING = "DESCENDING"
DOCUMENT_ID = "__name__"

_DocKey = Tuple[str, str]


class _TransactionConflict(Exception):
    pass


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _matches(data: Dict[str, Any], field: str, op: str, value: Any) -> bool:
    if field not in data:
        return False
    actual = data[field]
    try:
        if op == "==":
            return actual == value
        if op == "!=":
            return actual != value
        if op == "<":
            return actual is not None and actual < value
        if op == "<=":
            return actual is not None and actual <= value
        if op == ">":
            return actual is not None and actual > value
        if op == ">=":
            return actual is not None and actual >= value
        if op == "in":
            return actual in value
        if op == "not-in":
            return actual not in value
        if op == "array-contains":
            return isinstance(actual, list) and value in actual
    except TypeError:
        # Firestore never matches values of different types in range filters
        return False
    raise ValueError(f"Unsupported operator: {op}")


class MockDocumentSnapshot:
    def __init__(self, reference: "MockDocumentReference", data: Optional[Dict[str, Any]]):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data) if self._data is not None else None

    def get(self, field: str):
        return (self._data or {}).get(field)


class MockDocumentReference:
    def __init__(self, db: "MockFirestore", collection: str, doc_id: str):
        self._db = db
        self._collection = collection
        self.id = doc_id

    @property
    def path(self) -> str:
        return f"{self._collection}/{self.id}"

    @property
    def _key(self) -> _DocKey:
        return self._collection, self.id

    def get(self, transaction: Optional["MockTransaction"] = None) -> MockDocumentSnapshot:
        data, version = self._db._read(self._key)
        if transaction is not None:
            transaction._record_read(self._key, version)
        return MockDocumentSnapshot(self, data)

    def set(self, data: Dict[str, Any], merge: bool = False):
        self._db._commit({}, [("set", self._key, data, merge)])

    def update(self, data: Dict[str, Any]):
        self._db._commit({}, [("update", self._key, data, False)])

    def delete(self):
        self._db._commit({}, [("delete", self._key, None, False)])


class MockQuery:
    def __init__(self, db: "MockFirestore", collection: str, filters=None, orders=None,
                 limit_count: Optional[int] = None, offset_count: int = 0):
        self._db = db
        self._collection = collection
        self._filters: List[Tuple[str, str, Any]] = list(filters or [])
        self._orders: List[Tuple[str, str]] = list(orders or [])
        self._limit = limit_count
        self._offset = offset_count

    def _copy(self, **changes) -> "MockQuery":
        params = {
            "filters": self._filters,
            "orders": self._orders,
            "limit_count": self._limit,
            "offset_count": self._offset,
        }
        params.update(changes)
        return MockQuery(self._db, self._collection, **params)

    def where(self, field_path: str, op_string: str, value: Any) -> "MockQuery":
        return self._copy(filters=self._filters + [(field_path, op_string, value)])

    def order_by(self, field_path: str, direction: str = ASCENDING) -> "MockQuery":
        return self._copy(orders=self._orders + [(field_path, direction)])

    def limit(self, count: int) -> "MockQuery":
        return self._copy(limit_count=count)

    def offset(self, count: int) -> "MockQuery":
        return self._copy(offset_count=count)

    def _rows(self) -> List[Tuple[str, Dict[str, Any], int]]:
        rows = self._db._scan(self._collection)
        rows = [
            (doc_id, data, version) for doc_id, data, version in rows
            if all(_matches(data, f, op, v) for f, op, v in self._filters)
        ]

        # Stable multi-key sort, applied from the last key to the first.
        # Documents missing an ordered field are excluded, as in Firestore.
        rows.sort(key=lambda row: row[0])
        for field, direction in reversed(self._orders):
            if field == DOCUMENT_ID:
                rows.sort(key=lambda row: row[0], reverse=(direction == DESCENDING))
                continue
            rows = [row for row in rows if field in row[1]]
            rows.sort(
                key=lambda row: (row[1][field] is not None, row[1][field]),
                reverse=(direction == DESCENDING),
            )

        rows = rows[self._offset:]
        if self._limit is not None:
            rows = rows[:self._limit]
        return rows

    def count(self, alias: Optional[str] = None) -> "MockAggregationQuery":
        return MockAggregationQuery(self, alias or "count")

    def stream(self, transaction: Optional["MockTransaction"] = None) -> Iterator[MockDocumentSnapshot]:
        for doc_id, data, version in self._rows():
            ref = MockDocumentReference(self._db, self._collection, doc_id)
            if transaction is not None:
                transaction._record_read(ref._key, version)
            yield MockDocumentSnapshot(ref, data)

    def get(self, transaction: Optional["MockTransaction"] = None) -> List[MockDocumentSnapshot]:
        return list(self.stream(transaction=transaction))


class MockAggregationResult:
    def __init__(self, alias: str, value: int):
        self.alias = alias
        self.value = value


class MockAggregationQuery:
    """query.count(): results come back as [[AggregationResult]] like the real client."""

    def __init__(self, query: MockQuery, alias: str):
        self._query = query
        self._alias = alias

    def get(self, transaction: Optional["MockTransaction"] = None) -> List[List[MockAggregationResult]]:
        return [[MockAggregationResult(self._alias, len(self._query._rows()))]]


class MockCollectionReference(MockQuery):
    def __init__(self, db: "MockFirestore", name: str):
        super().__init__(db, name)
        self.id = name

    def document(self, doc_id: Optional[str] = None) -> MockDocumentReference:
        return MockDocumentReference(self._db, self._collection, doc_id or uuid.uuid4().hex[:20])


class MockTransaction:
    def __init__(self, db: "MockFirestore"):
        self._db = db
        self._reads: Dict[_DocKey, int] = {}
        self._writes: List[Tuple[str, _DocKey, Optional[Dict[str, Any]], bool]] = []

    def _record_read(self, key: _DocKey, version: int):
        if self._writes:
            raise ValueError("Transactions require all reads to be executed before all writes.")
        self._reads.setdefault(key, version)

    def set(self, reference: MockDocumentReference, document_data: Dict[str, Any], merge: bool = False):
        self._writes.append(("set", reference._key, document_data, merge))

    def update(self, reference: MockDocumentReference, field_updates: Dict[str, Any]):
        self._writes.append(("update", reference._key, field_updates, False))

    def delete(self, reference: MockDocumentReference):
        self._writes.append(("delete", reference._key, None, False))

    def commit(self):
        self._db._commit(self._reads, self._writes)


class MockFirestore:
    """Thread-safe in-memory document store with the Firestore client shape."""

    def __init__(self, path: Optional[str] = None):
        self._lock = threading.RLock()
        self._docs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[_DocKey, int] = {}
        self._path = path
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._docs = json.load(f)
            for collection, docs in self._docs.items():
                for doc_id in docs:
                    self._versions[(collection, doc_id)] = 1
            logger.info(f"Loaded mock DB from {path}")

    def collection(self, name: str) -> MockCollectionReference:
        return MockCollectionReference(self, name)

    def collections(self) -> List[MockCollectionReference]:
        with self._lock:
            return [MockCollectionReference(self, name) for name in self._docs]

    def transaction(self, max_attempts: int = 5) -> MockTransaction:
        return MockTransaction(self)

    def run_transaction(self, callback: Callable[[MockTransaction], Any], max_attempts: int = 5):
        """
        Run callback(transaction) and commit, retrying on read conflicts.

        Exceptions raised by the callback abort the attempt without writing.
        """
        for attempt in range(1, max_attempts + 1):
            transaction = MockTransaction(self)
            result = callback(transaction)
            try:
                transaction.commit()
                return result
            except _TransactionConflict:
                logger.debug(f"Mock transaction conflict, attempt {attempt}/{max_attempts}")
        raise ConcurrentUpdateError(
            f"Transaction failed after {max_attempts} attempts due to concurrent updates",
            attempts=max_attempts,
        )

    # Internal storage primitives

    def _read(self, key: _DocKey) -> Tuple[Optional[Dict[str, Any]], int]:
        collection, doc_id = key
        with self._lock:
            data = self._docs.get(collection, {}).get(doc_id)
            return copy.deepcopy(data), self._versions.get(key, 0)

    def _scan(self, collection: str) -> List[Tuple[str, Dict[str, Any], int]]:
        with self._lock:
            return [
                (doc_id, copy.deepcopy(data), self._versions.get((collection, doc_id), 0))
                for doc_id, data in self._docs.get(collection, {}).items()
            ]

    def _commit(self, reads: Dict[_DocKey, int], writes):
        with self._lock:
            for key, version in reads.items():
                if self._versions.get(key, 0) != version:
                    raise _TransactionConflict(f"{key[0]}/{key[1]} changed during transaction")

            # Validate before applying so a failed commit writes nothing
            pending = {}
            for op, key, data, merge in writes:
                current = pending[key] if key in pending else self._docs.get(key[0], {}).get(key[1])
                if op == "update" and current is None:
                    raise DocumentNotFound(f"No document to update: {key[0]}/{key[1]}")
                if op == "delete":
                    pending[key] = None
                elif op == "update" or (op == "set" and merge):
                    merged = copy.deepcopy(current) if current else {}
                    merged.update(copy.deepcopy(data))
                    pending[key] = merged
                else:
                    pending[key] = copy.deepcopy(data)

            for key, data in pending.items():
                collection, doc_id = key
                if data is None:
                    self._docs.get(collection, {}).pop(doc_id, None)
                else:
                    self._docs.setdefault(collection, {})[doc_id] = data
                self._versions[key] = self._versions.get(key, 0) + 1

            if pending:
                self._persist()

    def _persist(self):
        if not self._path:
            return
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(self._docs, f, default=_json_default, indent=2)


def get_mock_db(path: Optional[str] = None) -> MockFirestore:
    return MockFirestore(path)
