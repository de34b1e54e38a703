"""
Firestore helpers shared by the services.

- where_filter: positional query filter (works with firebase_admin and the mock DB)
- count_documents: count aggregation on either backend
- validate_document_id: reject ids Firestore cannot address
- run_in_transaction: run a callback inside a retrying transaction on either backend
- to_utc_datetime / utc_now: timestamp normalisation
"""

import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from firebase_admin import firestore

from app.config.mock_firestore import MockFirestore
from app.core.exceptions import InvalidIdentifier

T = TypeVar("T")

ASCENDING = firestore.Query.ASCENDING
DESCENDING = firestore.Query.DESCENDING
# Field path of the document id, for order_by tie-breaks
DOCUMENT_ID = "__name__"
MAX_DOCUMENT_ID_BYTES = 1500

_RESERVED_ID = re.compile(r"^__.*__$")


def where_filter(query, field_path: str, op_string: str, value):
    """
    Helper function for Firestore queries.

    Usage:
        query = where_filter(collection, "municipality_id", "==", "m-1")
        query = where_filter(query, "active", "==", True)
    """
    return query.where(field_path, op_string, value)


def count_documents(query) -> int:
    """Number of documents `query` matches, counted by the store."""
    results = query.count(alias="total").get()
    return int(results[0][0].value)


def validate_document_id(value, field: str = "id") -> str:
    """
    Return `value` if it can be used as a document id.

    Firestore ids must be non-empty strings of at most 1500 bytes, must not
    contain "/" (a path separator), must not be "." or "..", and must not
    match the reserved pattern __.*__.

    Raises:
        InvalidIdentifier: any of the above is violated
    """
    if (
        not isinstance(value, str)
        or not value
        or "/" in value
        or value in (".", "..")
        or _RESERVED_ID.match(value)
        or len(value.encode("utf-8")) > MAX_DOCUMENT_ID_BYTES
    ):
        raise InvalidIdentifier(field, value)
    return value


def run_in_transaction(db, callback: Callable[[Any], T], max_attempts: int = 5) -> T:
    """
    Run `callback(transaction)` inside a transaction and commit it.

    The callback may be invoked several times when the transaction conflicts
    with a concurrent writer, so it must only read through the transaction
    and only write through `transaction.set/update/delete`. All reads must
    happen before the first write.
    """
    if isinstance(db, MockFirestore):
        return db.run_transaction(callback, max_attempts=max_attempts)

    transaction = db.transaction(max_attempts=max_attempts)
    return firestore.transactional(callback)(transaction)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_datetime(value) -> Optional[datetime]:
    """
    Parse various timestamp formats to timezone-aware datetime (UTC).

    All datetimes must be timezone-aware so age arithmetic never mixes
    naive and aware values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    # Firestore Timestamp / DatetimeWithNanoseconds interface
    if hasattr(value, "timestamp"):
        return datetime.fromtimestamp(value.timestamp(), tz=timezone.utc)
    return None
