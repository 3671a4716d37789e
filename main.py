import logging
import math
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import UpdateOne
from pymongo.database import Database
from pymongo.errors import PyMongoError

import guardians
from auth import current_user, find_user_by_email
from database import EMERGENCY_CONTACTS, ensure_indexes, features_in_bbox, get_db, normalize_bbox, serialize, to_object_id, utcnow
from errors import ApiError, db_errors
from routing import plan_safe_route
from schemas import EmergencyContactBody, GuardianCreate, GuardianUpdate, RouteRequest, SOSTrigger
from settings import CORS_ORIGINS, LOG_LEVEL, PORT

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("safepath")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = app.dependency_overrides.get(get_db, get_db)()
    try:
        ensure_indexes(db)
    except PyMongoError as e:
        logger.warning("[Startup] could not ensure indexes, continuing without them: %s", e)
    yield


app = FastAPI(title="Busan Safety Path API", version="0.3.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Error envelope
# -----------------------------
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "잘못된 요청입니다.", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "서버 오류가 발생했습니다."})


@app.get("/")
def read_root():
    return {"message": "Safety Path API running"}


# -----------------------------
# Routing
# -----------------------------
@app.post("/api/get-route")
def get_route(req: RouteRequest, db: Database = Depends(get_db)):
    weights = req.weights.model_dump(exclude_none=True) if req.weights else None
    with db_errors("[Route]", "길찾기 실패"):
        return plan_safe_route(db, req.start.model_dump(), req.end.model_dump(), weights)


# -----------------------------
# Safety features
# -----------------------------
def _bbox_or_none(sw_lat, sw_lng, ne_lat, ne_lng) -> Optional[Dict[str, float]]:
    if not (sw_lat and sw_lng and ne_lat and ne_lng):
        return None
    return normalize_bbox(sw_lat, sw_lng, ne_lat, ne_lng)


@app.get("/api/security-lights")
def security_lights(
    sw_lat: Optional[float] = Query(None, alias="swLat"),
    sw_lng: Optional[float] = Query(None, alias="swLng"),
    ne_lat: Optional[float] = Query(None, alias="neLat"),
    ne_lng: Optional[float] = Query(None, alias="neLng"),
    db: Database = Depends(get_db),
):
    bbox = _bbox_or_none(sw_lat, sw_lng, ne_lat, ne_lng)
    if not bbox:
        raise ApiError(400, "지도 영역 정보가 필요합니다.")
    with db_errors("[Features][lights]", "보안등 정보를 불러오는데 실패했습니다."):
        lights = features_in_bbox(db, "light", bbox)
    logger.info("[Features][lights] %d in %s", len(lights), bbox)
    return {"securityLights": lights}


@app.get("/api/cctv")
def cctv(
    sw_lat: Optional[float] = Query(None, alias="swLat"),
    sw_lng: Optional[float] = Query(None, alias="swLng"),
    ne_lat: Optional[float] = Query(None, alias="neLat"),
    ne_lng: Optional[float] = Query(None, alias="neLng"),
    db: Database = Depends(get_db),
):
    bbox = _bbox_or_none(sw_lat, sw_lng, ne_lat, ne_lng)
    if not bbox:
        raise ApiError(400, "지도 영역 정보가 필요합니다.")
    with db_errors("[Features][cctv]", "CCTV 정보를 불러오는데 실패했습니다."):
        return {"cctv": features_in_bbox(db, "cctv", bbox)}


@app.get("/api/emergency-bells")
def emergency_bells(
    sw_lat: Optional[float] = Query(None, alias="swLat"),
    sw_lng: Optional[float] = Query(None, alias="swLng"),
    ne_lat: Optional[float] = Query(None, alias="neLat"),
    ne_lng: Optional[float] = Query(None, alias="neLng"),
    db: Database = Depends(get_db),
):
    bbox = _bbox_or_none(sw_lat, sw_lng, ne_lat, ne_lng)
    if not bbox:
        return {"bells": []}
    with db_errors("[Features][bells]", "비상벨 정보를 불러오는데 실패했습니다."):
        return {"bells": features_in_bbox(db, "bell", bbox)}


@app.get("/api/safe-return-paths")
def safe_return_paths(
    sw_lat: Optional[float] = Query(None, alias="swLat"),
    sw_lng: Optional[float] = Query(None, alias="swLng"),
    ne_lat: Optional[float] = Query(None, alias="neLat"),
    ne_lng: Optional[float] = Query(None, alias="neLng"),
    db: Database = Depends(get_db),
):
    bbox = _bbox_or_none(sw_lat, sw_lng, ne_lat, ne_lng)
    if not bbox:
        return {"paths": []}
    with db_errors("[Features][paths]", "안심귀갓길 정보를 불러오는데 실패했습니다."):
        return {"paths": features_in_bbox(db, "safe_path", bbox)}


# -----------------------------
# Guardians
# -----------------------------
@app.get("/api/guardians")
def list_guardians(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    with db_errors("[Guardians][GET]", "보호자 정보를 불러오지 못했습니다."):
        return guardians.list_links(db, user)


@app.post("/api/guardians")
def request_guardian(body: GuardianCreate, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    if not body.email:
        raise ApiError(400, "이메일을 입력해주세요.")
    with db_errors("[Guardians][POST]", "사용자 조회에 실패했습니다."):
        target = find_user_by_email(db, body.email)
    if not target:
        raise ApiError(404, "해당 이메일을 가진 사용자를 찾을 수 없습니다.")
    with db_errors("[Guardians][POST]", "요청을 저장하지 못했습니다."):
        return guardians.request_link(db, user, target, body.relation, body.priority)


@app.patch("/api/guardians")
def update_guardian(body: GuardianUpdate, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    if not body.id:
        raise ApiError(400, "잘못된 요청입니다.")
    with db_errors("[Guardians][PATCH]", "요청 처리에 실패했습니다."):
        if body.action == "respond" and body.decision:
            return guardians.respond(db, user, body.id, body.decision)
        if body.action == "revoke":
            return guardians.revoke(db, user, body.id)
    raise ApiError(400, "잘못된 요청입니다.")


@app.delete("/api/guardians")
def delete_guardian(id: Optional[str] = None, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    if not id:
        raise ApiError(400, "ID가 필요합니다.")
    with db_errors("[Guardians][DELETE]", "삭제에 실패했습니다."):
        return guardians.delete_link(db, user, id)


@app.post("/api/guardians/sos")
def trigger_sos(body: SOSTrigger, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    if not user.get("email"):
        raise ApiError(400, "이메일 정보가 없는 계정입니다.")
    if body.latitude is None or body.longitude is None or math.isnan(body.latitude) or math.isnan(body.longitude):
        raise ApiError(400, "유효한 위치 정보가 필요합니다.")
    accuracy = body.accuracy if body.accuracy is not None and not math.isnan(body.accuracy) else None
    with db_errors("[Guardians][sos][POST]", "SOS 위치를 저장하지 못했습니다."):
        return guardians.trigger_sos(db, user, body.latitude, body.longitude, accuracy)


@app.delete("/api/guardians/sos")
def stop_sos(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    with db_errors("[Guardians][sos][DELETE]", "SOS 공유를 종료하지 못했습니다."):
        return guardians.stop_sos(db, user)


@app.get("/api/guardians/active-sos")
def active_sos(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    with db_errors("[Guardians][active-sos]", "SOS 정보를 불러오지 못했습니다."):
        return {"sessions": guardians.active_sessions(db, user)}


@app.get("/api/my-page")
def my_page(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    with db_errors("[MyPage][GET]", "보호자 정보를 불러오지 못했습니다."):
        return {"contacts": guardians.my_page_contacts(db, user)}


# -----------------------------
# Emergency contacts
# -----------------------------
@app.get("/api/emergency-contacts")
def list_contacts(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    with db_errors("[Contacts][GET]", "연락처를 불러오는데 실패했습니다."):
        contacts = db[EMERGENCY_CONTACTS].find({"user_id": user["id"]}).sort("priority", 1)
        return {"contacts": [serialize(c) for c in contacts]}


@app.post("/api/emergency-contacts")
def add_contact(body: EmergencyContactBody, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    if not body.name or not body.phone:
        raise ApiError(400, "이름과 전화번호는 필수입니다.")
    col = db[EMERGENCY_CONTACTS]
    with db_errors("[Contacts][POST]", "연락처 추가에 실패했습니다."):
        existing = list(col.find({"user_id": user["id"]}, {"priority": 1}))
        max_priority = max([c.get("priority") or 0 for c in existing], default=0)
        priority = body.priority or max_priority + 1
        if any(c.get("priority") == priority for c in existing):
            col.update_many({"user_id": user["id"], "priority": {"$gte": priority}}, {"$inc": {"priority": 1}})
        doc = {
            "user_id": user["id"],
            "name": body.name,
            "phone": body.phone,
            "priority": priority,
            "relation": body.relation or None,
            "created_at": utcnow(),
        }
        doc["_id"] = col.insert_one(doc).inserted_id
    return {"contact": serialize(doc)}


@app.put("/api/emergency-contacts/{contact_id}")
def update_contact(contact_id: str, body: EmergencyContactBody, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    if not body.name or not body.phone:
        raise ApiError(400, "이름과 전화번호는 필수입니다.")
    col = db[EMERGENCY_CONTACTS]
    oid = to_object_id(contact_id)
    with db_errors("[Contacts][PUT]", "연락처 수정에 실패했습니다."):
        current = col.find_one({"_id": oid, "user_id": user["id"]}) if oid else None
        if not current:
            raise ApiError(404, "연락처를 찾을 수 없습니다.")

        old = current.get("priority")
        new = body.priority or old
        ops = []
        if new != old:
            others = {"user_id": user["id"], "_id": {"$ne": oid}}
            holder = col.find_one({**others, "priority": new})
            if holder:
                ops.append(UpdateOne({"_id": holder["_id"]}, {"$set": {"priority": old}}))
            elif old is not None and new < old:
                col.update_many({**others, "priority": {"$gte": new, "$lt": old}}, {"$inc": {"priority": 1}})
            elif old is not None:
                col.update_many({**others, "priority": {"$gt": old, "$lte": new}}, {"$inc": {"priority": -1}})

        changes = {"name": body.name, "phone": body.phone, "priority": new, "relation": body.relation or None}
        ops.append(UpdateOne({"_id": oid, "user_id": user["id"]}, {"$set": changes}))
        col.bulk_write(ops, ordered=True)
    return {"contact": serialize({**current, **changes})}


@app.delete("/api/emergency-contacts/{contact_id}")
def delete_contact(contact_id: str, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    col = db[EMERGENCY_CONTACTS]
    oid = to_object_id(contact_id)
    with db_errors("[Contacts][DELETE]", "연락처 삭제에 실패했습니다."):
        current = col.find_one({"_id": oid, "user_id": user["id"]}) if oid else None
        if not current:
            raise ApiError(404, "연락처를 찾을 수 없습니다.")
        col.delete_one({"_id": oid, "user_id": user["id"]})
        if current.get("priority"):
            # close the gap left behind
            col.update_many(
                {"user_id": user["id"], "priority": {"$gt": current["priority"]}},
                {"$inc": {"priority": -1}},
            )
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
