from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from settings import DATABASE_NAME, DATABASE_URL

PROTECTOR = "protector"
EMERGENCY_CONTACTS = "emergency_contacts"
AUTH_USERS = "auth_users"
AUTH_SESSIONS = "auth_sessions"

# feature kind -> (collection, [(lat field, lng field), ...])
FEATURE_SOURCES = {
    "light": ("security_lights", [("latitude", "longitude")]),
    "cctv": ("cctv_installations", [("latitude", "longitude")]),
    "bell": ("safe_return_paths", [("latitude", "longitude")]),
    "safe_path": (
        "women_safe_return_paths",
        [("start_latitude", "start_longitude"), ("end_latitude", "end_longitude")],
    ),
}

_client: Optional[MongoClient] = None


def get_db() -> Database:
    global _client
    if _client is None:
        _client = MongoClient(DATABASE_URL, tz_aware=True)
    return _client[DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    # one protector row per unordered pair of users
    db[PROTECTOR].create_index([("pair_key", ASCENDING)], unique=True)
    db[PROTECTOR].create_index([("requester_user_id", ASCENDING)])
    db[PROTECTOR].create_index([("target_user_id", ASCENDING)])
    db[EMERGENCY_CONTACTS].create_index([("user_id", ASCENDING), ("priority", ASCENDING)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> Optional[datetime]:
    """Read a stored timestamp as an aware UTC datetime (naive values are UTC)."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Any) -> Optional[str]:
    dt = as_utc(value)
    return dt.isoformat().replace("+00:00", "Z") if dt else None


def to_object_id(value: Any) -> Optional[ObjectId]:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, datetime):
            out[k] = iso(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        else:
            out[k] = v
    return out


def normalize_bbox(sw_lat: float, sw_lng: float, ne_lat: float, ne_lng: float) -> Dict[str, float]:
    return {
        "min_lat": min(sw_lat, ne_lat),
        "max_lat": max(sw_lat, ne_lat),
        "min_lng": min(sw_lng, ne_lng),
        "max_lng": max(sw_lng, ne_lng),
    }


def features_in_bbox(db: Database, kind: str, bbox: Dict[str, float], limit: int = 0) -> List[Dict[str, Any]]:
    """Features of one kind with any of their points inside ``bbox``.

    Safe-return paths match when either endpoint is inside the box.
    """
    collection, points = FEATURE_SOURCES[kind]
    clauses = [
        {
            lat_f: {"$gte": bbox["min_lat"], "$lte": bbox["max_lat"]},
            lng_f: {"$gte": bbox["min_lng"], "$lte": bbox["max_lng"]},
        }
        for lat_f, lng_f in points
    ]
    query = clauses[0] if len(clauses) == 1 else {"$or": clauses}
    cursor = db[collection].find(query)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]
