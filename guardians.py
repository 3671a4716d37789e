"""
Guardian ("protector") links and the SOS share embedded in them.

A link is created ``pending`` by the requester and answered by the target
(``accepted`` / ``declined``). Either party may later ``revoke`` an accepted
link or delete the row outright. Each unordered pair of users owns at most one
row; a re-request after a terminal answer reuses it.

SOS fields live on the link row. A share is active while ``sos_sharing`` is set
and ``sos_expires_at`` lies in the future; nothing sweeps expired rows, so every
reader applies that check itself.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import profile_map, user_label
from database import PROTECTOR, as_utc, iso, to_object_id, utcnow
from errors import ApiError, Unauthorized
from settings import SOS_TTL_MINUTES

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
REVOKED = "revoked"

DEFAULT_RELATION = "기타"
MISSING_PRIORITY = 99


def normalize_priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return 2
    return min(3, max(1, int(round(value))))


def pair_key(a: str, b: str) -> str:
    return ":".join(sorted([a, b]))


def involving(user_id: str) -> Dict[str, Any]:
    return {"$or": [{"requester_user_id": user_id}, {"target_user_id": user_id}]}


def cleared_sos() -> Dict[str, Any]:
    return {
        "sos_sharing": False,
        "sos_triggered_by": None,
        "sos_latitude": None,
        "sos_longitude": None,
        "sos_precision_m": None,
        "sos_started_at": None,
        "sos_ended_at": None,
        "sos_expires_at": None,
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def sos_expired(row: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(row.get("sos_expires_at"))
    return expires_at is None or expires_at <= (now or utcnow())


def find_link(db: Database, link_id: str) -> Optional[Dict[str, Any]]:
    oid = to_object_id(link_id)
    return db[PROTECTOR].find_one({"_id": oid}) if oid else None


# -----------------------------
# Read models
# -----------------------------

def sos_payload(row: Dict[str, Any], viewer: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    active = (
        bool(row.get("sos_sharing"))
        and _is_number(row.get("sos_latitude"))
        and _is_number(row.get("sos_longitude"))
        and not sos_expired(row, now)
    )
    if not active:
        return None
    payload: Dict[str, Any] = {
        "triggeredByMe": row.get("sos_triggered_by") == viewer.get("email"),
        "startedAt": iso(row.get("sos_started_at")),
        "expiresAt": iso(row.get("sos_expires_at")),
    }
    # the triggering party never gets their own position back
    if not payload["triggeredByMe"]:
        payload["latitude"] = row["sos_latitude"]
        payload["longitude"] = row["sos_longitude"]
        payload["precision"] = row.get("sos_precision_m")
    return payload


def guardian_entry(row: Dict[str, Any], viewer: Dict[str, Any], profiles: Dict[str, Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    is_requester = row.get("requester_user_id") == viewer["id"]
    partner_id = row.get("target_user_id") if is_requester else row.get("requester_user_id")
    partner_email = row.get("target_email") if is_requester else row.get("requester_email")
    profile = profiles.get(partner_id) if partner_id else None

    if is_requester:
        relation = row.get("requester_relation") or DEFAULT_RELATION
        priority = row.get("requester_priority")
    else:
        relation = row.get("target_relation") or row.get("requester_relation") or DEFAULT_RELATION
        priority = row.get("target_priority")
        if priority is None:
            priority = row.get("requester_priority")

    return {
        "id": str(row["_id"]),
        "status": row.get("status"),
        "isRequester": is_requester,
        "partner": {
            "id": partner_id,
            "email": (profile or {}).get("email") or partner_email,
            "name": (profile or {}).get("name") or user_label(partner_email),
            "phone": (profile or {}).get("phone"),
        },
        "relation": relation,
        "priority": MISSING_PRIORITY if priority is None else priority,
        "created_at": iso(row.get("created_at")),
        "responded_at": iso(row.get("responded_at")),
        "sos": sos_payload(row, viewer, now),
    }


def list_links(db: Database, user: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    rows = list(db[PROTECTOR].find(involving(user["id"])).sort("created_at", -1))
    profiles = profile_map(
        db,
        (r.get("target_user_id") if r.get("requester_user_id") == user["id"] else r.get("requester_user_id") for r in rows),
    )
    now = utcnow()
    guardians, incoming, outgoing = [], [], []
    for row in rows:
        entry = guardian_entry(row, user, profiles, now)
        if row.get("status") == ACCEPTED:
            guardians.append(entry)
        elif row.get("status") == PENDING:
            (outgoing if entry["isRequester"] else incoming).append(entry)

    guardians.sort(key=lambda e: e["priority"] or MISSING_PRIORITY)
    return {"guardians": guardians, "incomingRequests": incoming, "outgoingRequests": outgoing}


def my_page_contacts(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Accepted guardians as a contact list, for the my-page screen."""
    query = {"status": ACCEPTED, **involving(user["id"])}
    rows = list(db[PROTECTOR].find(query).sort("created_at", 1))
    partner_ids = [r.get("target_user_id") if r.get("requester_user_id") == user["id"] else r.get("requester_user_id") for r in rows]
    profiles = profile_map(db, partner_ids)

    contacts = []
    for row, partner_id in zip(rows, partner_ids):
        is_requester = row.get("requester_user_id") == user["id"]
        profile = profiles.get(partner_id) or {}
        partner_email = row.get("target_email") if is_requester else row.get("requester_email")
        own, other = ("requester", "target") if is_requester else ("target", "requester")
        priority = row.get(f"{own}_priority")
        if priority is None:
            priority = row.get(f"{other}_priority")
        contacts.append({
            "id": str(row["_id"]),
            "name": profile.get("name") or user_label(partner_email),
            "relation": row.get(f"{own}_relation") or row.get(f"{other}_relation") or "보호자",
            "phone": profile.get("phone") or "",
            "priority": MISSING_PRIORITY if priority is None else priority,
        })
    contacts.sort(key=lambda c: c["priority"])
    return contacts


# -----------------------------
# Link transitions
# -----------------------------

def request_link(db: Database, user: Dict[str, Any], target: Dict[str, Any], relation: Optional[str] = None, priority: Any = None) -> Dict[str, Any]:
    if target["id"] == user["id"]:
        raise ApiError(400, "본인을 보호자로 등록할 수 없습니다.")

    key = pair_key(user["id"], target["id"])
    fresh = {
        "requester_user_id": user["id"],
        "requester_email": user.get("email"),
        "requester_relation": relation or DEFAULT_RELATION,
        "requester_priority": normalize_priority(priority),
        "target_user_id": target["id"],
        "target_email": target.get("email"),
        "status": PENDING,
        "responded_at": None,
    }

    existing = db[PROTECTOR].find_one({"pair_key": key})
    if existing:
        status = existing.get("status")
        if status == ACCEPTED:
            raise ApiError(409, "이미 연결된 보호자입니다.")
        if status == PENDING:
            if existing.get("requester_user_id") == user["id"]:
                raise ApiError(409, "이미 해당 사용자에게 요청을 보냈습니다.")
            raise ApiError(409, "상대방의 요청을 먼저 확인해주세요.")

        # declined / revoked: the pair's row becomes a new request from the caller
        result = db[PROTECTOR].update_one(
            {"_id": existing["_id"], "status": status},
            {"$set": {**fresh, "target_relation": None, "target_priority": None, **cleared_sos()}},
        )
        if result.matched_count == 0:
            raise ApiError(409, "요청이 이미 변경되었습니다. 다시 시도해주세요.")
        logger.info("[Guardians][POST] reused link %s (%s -> %s)", existing["_id"], user["id"], target["id"])
        return {"success": True, "reused": True}

    try:
        db[PROTECTOR].insert_one({
            **fresh,
            "pair_key": key,
            "target_relation": None,
            "target_priority": None,
            "created_at": utcnow(),
            **cleared_sos(),
        })
    except DuplicateKeyError:
        # a concurrent request for the same pair got there first
        raise ApiError(409, "이미 처리 중인 요청이 있습니다.")
    logger.info("[Guardians][POST] new request %s -> %s", user["id"], target["id"])
    return {"success": True}


def respond(db: Database, user: Dict[str, Any], link_id: str, decision: str) -> Dict[str, Any]:
    if decision not in ("accept", "decline"):
        raise ApiError(400, "잘못된 요청입니다.")
    record = find_link(db, link_id)
    if not record:
        raise ApiError(404, "요청을 찾을 수 없습니다.")
    if record.get("target_user_id") != user["id"]:
        raise Unauthorized()
    if record.get("status") != PENDING:
        raise ApiError(400, "이미 처리된 요청입니다.")

    next_status = ACCEPTED if decision == "accept" else DECLINED
    update: Dict[str, Any] = {"status": next_status, "responded_at": utcnow()}
    if next_status == ACCEPTED:
        # no SOS data from before the link existed may leak through
        update.update(cleared_sos())
    result = db[PROTECTOR].update_one({"_id": record["_id"], "status": PENDING}, {"$set": update})
    if result.matched_count == 0:
        raise ApiError(400, "이미 처리된 요청입니다.")
    return {"success": True, "status": next_status}


def revoke(db: Database, user: Dict[str, Any], link_id: str) -> Dict[str, Any]:
    record = find_link(db, link_id)
    if not record:
        raise ApiError(404, "요청을 찾을 수 없습니다.")
    if user["id"] not in (record.get("requester_user_id"), record.get("target_user_id")):
        raise Unauthorized()
    if record.get("status") != ACCEPTED:
        raise ApiError(400, "연결된 보호자만 해제할 수 있습니다.")
    db[PROTECTOR].update_one(
        {"_id": record["_id"], "status": ACCEPTED},
        {"$set": {"status": REVOKED, "responded_at": utcnow(), **cleared_sos()}},
    )
    return {"success": True, "status": REVOKED}


def delete_link(db: Database, user: Dict[str, Any], link_id: str) -> Dict[str, Any]:
    record = find_link(db, link_id)
    if not record:
        raise ApiError(404, "데이터를 찾을 수 없습니다.")
    if user["id"] not in (record.get("requester_user_id"), record.get("target_user_id")):
        raise Unauthorized()
    db[PROTECTOR].delete_one({"_id": record["_id"]})
    return {"success": True}


# -----------------------------
# SOS sessions
# -----------------------------

def trigger_sos(db: Database, user: Dict[str, Any], latitude: float, longitude: float, accuracy: Optional[float] = None) -> Dict[str, Any]:
    query = {"status": ACCEPTED, **involving(user["id"])}
    ids = [row["_id"] for row in db[PROTECTOR].find(query, {"_id": 1})]
    if not ids:
        raise ApiError(409, "등록된 보호자가 없습니다.")

    now = utcnow()
    expires_at = now + timedelta(minutes=SOS_TTL_MINUTES)
    db[PROTECTOR].update_many(
        {"_id": {"$in": ids}, "status": ACCEPTED},
        {"$set": {
            "sos_sharing": True,
            "sos_triggered_by": user["email"],
            "sos_latitude": latitude,
            "sos_longitude": longitude,
            "sos_precision_m": accuracy if _is_number(accuracy) else None,
            "sos_started_at": now,
            "sos_ended_at": None,
            "sos_expires_at": expires_at,
        }},
    )
    logger.info("[Guardians][sos] %s shared location with %d link(s) until %s", user["id"], len(ids), iso(expires_at))
    return {"success": True, "expiresAt": iso(expires_at)}


def stop_sos(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    if not user.get("email"):
        return {"success": True}
    now = utcnow()
    query = {
        "status": ACCEPTED,
        "sos_sharing": True,
        "sos_triggered_by": user["email"],
        **involving(user["id"]),
    }
    db[PROTECTOR].update_many(query, {"$set": {"sos_sharing": False, "sos_ended_at": now, "sos_expires_at": now}})
    return {"success": True}


def active_sessions(db: Database, user: Dict[str, Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    query = {"status": ACCEPTED, "sos_sharing": True, **involving(user["id"])}
    rows = [r for r in db[PROTECTOR].find(query).sort("sos_started_at", -1) if not sos_expired(r, now)]
    if not rows:
        return []

    # the partner is always the triggering party, for both viewers
    def partner(row):
        side = "requester" if row.get("sos_triggered_by") == row.get("requester_email") else "target"
        return row.get(f"{side}_user_id"), row.get(f"{side}_email")

    partners = [partner(r) for r in rows]
    profiles = profile_map(db, (p[0] for p in partners))

    sessions = []
    for row, (partner_id, partner_email) in zip(rows, partners):
        profile = profiles.get(partner_id) or {}
        session: Dict[str, Any] = {
            "id": str(row["_id"]),
            "partnerId": partner_id,
            "partnerName": user_label(profile.get("email") or partner_email, profile.get("name")),
            "partnerEmail": profile.get("email") or partner_email,
            "triggeredByMe": row.get("sos_triggered_by") == user.get("email"),
            "startedAt": iso(row.get("sos_started_at")),
            "expiresAt": iso(row.get("sos_expires_at")),
        }
        if not session["triggeredByMe"]:
            if _is_number(row.get("sos_latitude")) and _is_number(row.get("sos_longitude")):
                session["latitude"] = row["sos_latitude"]
                session["longitude"] = row["sos_longitude"]
            session["precision"] = row.get("sos_precision_m")
        sessions.append(session)
    return sessions
