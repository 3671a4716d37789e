"""
Adapter over the hosted auth provider's user store.

The application never writes here; it only resolves bearer tokens to users and
looks users up by id or email. Users are stored in ``auth_users`` and issued
tokens in ``auth_sessions``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Depends, Header
from pymongo.database import Database

from database import AUTH_SESSIONS, AUTH_USERS, as_utc, get_db, utcnow
from errors import Unauthorized

logger = logging.getLogger(__name__)

USERS_PAGE_SIZE = 1000


def _user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "email": doc.get("email"),
        "phone": doc.get("phone"),
        "user_metadata": doc.get("user_metadata") or {},
    }


def get_user_for_token(db: Database, token: str) -> Optional[Dict[str, Any]]:
    session = db[AUTH_SESSIONS].find_one({"_id": token})
    if not session:
        return None
    expires_at = as_utc(session.get("expires_at"))
    if expires_at and expires_at <= utcnow():
        return None
    doc = db[AUTH_USERS].find_one({"_id": session.get("user_id")})
    return _user(doc) if doc else None


def list_users(db: Database, page: int = 1, per_page: int = USERS_PAGE_SIZE) -> List[Dict[str, Any]]:
    cursor = db[AUTH_USERS].find({}).sort("_id", 1).skip((page - 1) * per_page).limit(per_page)
    return [_user(d) for d in cursor]


def find_user_by_email(db: Database, email: str) -> Optional[Dict[str, Any]]:
    page = 1
    while True:
        users = list_users(db, page=page)
        for u in users:
            if u["email"] == email:
                return u
        if len(users) < USERS_PAGE_SIZE:
            return None
        page += 1


def user_label(email: Optional[str] = None, fallback_name: Optional[str] = None) -> str:
    if fallback_name:
        return fallback_name
    if not email:
        return "사용자"
    return email.split("@")[0] or email


def profile_map(db: Database, ids: Iterable[Optional[str]]) -> Dict[str, Dict[str, Any]]:
    """Display profiles for the distinct non-empty ids, fetched in one query."""
    unique_ids = list(dict.fromkeys(i for i in ids if i))
    if not unique_ids:
        return {}
    profiles: Dict[str, Dict[str, Any]] = {}
    for doc in db[AUTH_USERS].find({"_id": {"$in": unique_ids}}):
        u = _user(doc)
        meta = u["user_metadata"]
        profiles[u["id"]] = {
            "id": u["id"],
            "email": u["email"],
            "name": meta.get("name") or user_label(u["email"]),
            "phone": meta.get("phone") or u["phone"] or None,
        }
    return profiles


def current_user(authorization: Optional[str] = Header(None), db: Database = Depends(get_db)) -> Dict[str, Any]:
    token = (authorization or "").replace("Bearer ", "").strip()
    if not token:
        raise Unauthorized()
    user = get_user_for_token(db, token)
    if not user:
        raise Unauthorized()
    return user
