import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId


CURSOR_SEPARATOR = "|"

# the only form utc_now_iso() produces; string order equals time order only within it
TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z")


def utc_now_iso() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    Millisecond precision keeps values identical after a BSON round trip and
    makes lexicographic order equal to time order.
    """
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def encode_cursor(timestamp: str, object_id: Any) -> str:
    return f"{timestamp}{CURSOR_SEPARATOR}{object_id}"


def decode_cursor(cursor: Optional[str]) -> Tuple[Optional[str], Optional[ObjectId]]:
    """Split ``<timestamp>|<objectId>`` into its parts.

    A bare timestamp (no separator) is accepted and yields ``(timestamp, None)``.
    Raises ValueError when the timestamp is not in ``utc_now_iso()`` form or
    the tie-breaker is not an ObjectId.
    """
    if not cursor:
        return None, None
    timestamp, sep, oid_hex = cursor.partition(CURSOR_SEPARATOR)
    if not TIMESTAMP_RE.fullmatch(timestamp):
        raise ValueError("cursor timestamp must look like YYYY-MM-DDTHH:MM:SS.mmmZ")
    if not sep:
        return timestamp, None
    if not ObjectId.is_valid(oid_hex):
        raise ValueError("cursor id is not a valid ObjectId")
    return timestamp, ObjectId(oid_hex)


def cursor_filter(field: str, cursor: Optional[str]) -> Dict[str, Any]:
    """Mongo filter selecting documents strictly after ``cursor`` in
    ``(field desc, _id desc)`` order."""
    timestamp, oid = decode_cursor(cursor)
    if timestamp is None:
        return {}
    if oid is None:
        return {field: {"$lt": timestamp}}
    return {
        "$or": [
            {field: {"$lt": timestamp}},
            {field: timestamp, "_id": {"$lt": oid}},
        ]
    }


def build_page(docs: List[Dict[str, Any]], limit: int, field: str) -> Dict[str, Any]:
    """Trim an over-fetched (``limit + 1``) result into a page."""
    has_more = len(docs) > limit
    items = docs[:limit]
    next_cursor = None
    if has_more and items:
        last = items[-1]
        next_cursor = encode_cursor(last[field], last["_id"])
    for it in items:
        it["_id"] = str(it["_id"])
    return {"items": items, "nextCursor": next_cursor, "hasMore": has_more}
