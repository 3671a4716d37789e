import json
import logging
from math import asin, cos, radians, sin, sqrt
from typing import Any, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pymongo.database import Database

from database import FEATURE_SOURCES, features_in_bbox
from errors import ApiError
from settings import GRAPHHOPPER_TIMEOUT, GRAPHHOPPER_URL, MAX_ROUTE_DISTANCE_KM, WALKING_DISTANCE_KM

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# ~300 m of latitude
BBOX_BUFFER_DEG = 0.003
SAMPLE_STRIDE = 5

FEATURE_WEIGHTS = {"cctv": 50, "safe_path": 30, "bell": 20, "light": 5}
FEATURE_RADIUS_M = {"cctv": 50.0, "safe_path": 100.0, "bell": 50.0, "light": 50.0}
DEBUG_KEYS = {"cctv": "cctv", "safe_path": "safePath", "bell": "bell", "light": "light"}

DEFAULT_PRIMARY_MULTIPLIER = 0.7
DEFAULT_SERVICE_MULTIPLIER = 1.5


# -----------------------------
# Geometry
# -----------------------------

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    dlat = radians(lat2 - lat1)
    dlng = radians(lng2 - lng1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(min(1.0, sqrt(a)))


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return haversine_km(lat1, lng1, lat2, lng2) * 1000.0


def choose_profile(distance_km: float) -> str:
    return "foot" if distance_km < WALKING_DISTANCE_KM else "car"


# -----------------------------
# GraphHopper
# -----------------------------

def build_payload(start: Dict[str, float], end: Dict[str, float], weights: Optional[Dict[str, Any]], profile: str) -> Dict[str, Any]:
    weights = weights or {}
    road_safety = weights.get("roadSafety")
    crime = weights.get("crime")
    return {
        # GraphHopper takes [lng, lat]
        "points": [[start["lng"], start["lat"]], [end["lng"], end["lat"]]],
        "profile": profile,
        "locale": "ko",
        "calc_points": True,
        "points_encoded": False,
        "ch.disable": True,
        "algorithm": "alternative_route",
        "alternative_route.max_paths": 3,
        "alternative_route.max_weight_factor": 1.4,
        "alternative_route.max_share_factor": 0.6,
        "custom_model": {
            "priority": [
                {
                    "if": "road_class == PRIMARY",
                    "multiply_by": str(1 / road_safety) if road_safety else str(DEFAULT_PRIMARY_MULTIPLIER),
                },
                {
                    "if": "road_class == SERVICE",
                    "multiply_by": str(crime) if crime else str(DEFAULT_SERVICE_MULTIPLIER),
                },
            ],
            "distance_influence": 100,
        },
    }


def post_json(url: str, payload: Dict[str, Any], timeout: float = GRAPHHOPPER_TIMEOUT) -> Tuple[int, str]:
    """POST a JSON body; returns (status, body text) for success and HTTP errors alike."""
    req = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "User-Agent": "SafeRoutes/0.3"},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.status, resp.read().decode("utf-8")
    except HTTPError as e:
        return e.code, e.read().decode("utf-8", errors="replace")


def _engine_message(text: str) -> str:
    try:
        return str(json.loads(text).get("message") or "")
    except (ValueError, AttributeError):
        return ""


def _is_missing_profile(text: str, profile: str) -> bool:
    message = _engine_message(text)
    return "does not exist" in message and profile in message


def fetch_routes(payload: Dict[str, Any], distance_km: float) -> Dict[str, Any]:
    try:
        status, text = post_json(GRAPHHOPPER_URL, payload)
        if status >= 400 and payload["profile"] == "foot" and _is_missing_profile(text, "foot"):
            logger.info("[Route] foot profile missing, falling back to car (distance %.2fkm)", distance_km)
            payload["profile"] = "car"
            status, text = post_json(GRAPHHOPPER_URL, payload)
    except (URLError, OSError) as e:
        logger.error("[Route] GraphHopper unreachable: %s", e)
        raise ApiError(500, "길찾기 실패")

    if status >= 400:
        logger.error("[Route] GraphHopper HTTP error %s: %s", status, text)
        raise ApiError(status, "GraphHopper API 오류", message=text, status=status)

    try:
        return json.loads(text)
    except ValueError:
        logger.error("[Route] GraphHopper returned invalid JSON: %s", text[:200])
        raise ApiError(500, "길찾기 실패")


# -----------------------------
# Safety scoring
# -----------------------------

def path_coordinates(path: Dict[str, Any]) -> List[Tuple[float, float]]:
    """(lat, lng) vertices of a path with unencoded points."""
    coords = (path.get("points") or {}).get("coordinates") or []
    return [(float(c[1]), float(c[0])) for c in coords if len(c) >= 2]


def paths_bbox(paths: List[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    lats: List[float] = []
    lngs: List[float] = []
    for p in paths:
        bbox = p.get("bbox")
        if bbox and len(bbox) == 4:
            lngs += [bbox[0], bbox[2]]
            lats += [bbox[1], bbox[3]]
        else:
            for lat, lng in path_coordinates(p):
                lats.append(lat)
                lngs.append(lng)
    if not lats:
        return None
    return {"min_lat": min(lats), "max_lat": max(lats), "min_lng": min(lngs), "max_lng": max(lngs)}


def expand_bbox(bbox: Dict[str, float], buffer_deg: float = BBOX_BUFFER_DEG) -> Dict[str, float]:
    return {
        "min_lat": bbox["min_lat"] - buffer_deg,
        "max_lat": bbox["max_lat"] + buffer_deg,
        "min_lng": bbox["min_lng"] - buffer_deg,
        "max_lng": bbox["max_lng"] + buffer_deg,
    }


def feature_points(kind: str, feature: Dict[str, Any]) -> List[Tuple[float, float]]:
    points = []
    for lat_f, lng_f in FEATURE_SOURCES[kind][1]:
        lat, lng = feature.get(lat_f), feature.get(lng_f)
        if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
            points.append((float(lat), float(lng)))
    return points


def fetch_features(db: Database, bbox: Dict[str, float]) -> Dict[str, List[Dict[str, Any]]]:
    return {kind: features_in_bbox(db, kind, bbox) for kind in FEATURE_SOURCES}


def score_path(coords: List[Tuple[float, float]], features: Dict[str, List[Dict[str, Any]]]) -> Tuple[int, Dict[str, int]]:
    """Weighted count of distinct features near every SAMPLE_STRIDE-th vertex."""
    samples = coords[::SAMPLE_STRIDE]
    hits: Dict[str, set] = {kind: set() for kind in FEATURE_WEIGHTS}
    for kind, items in features.items():
        radius = FEATURE_RADIUS_M[kind]
        for idx, feature in enumerate(items):
            key = feature.get("id", idx)
            pts = feature_points(kind, feature)
            if any(haversine_m(lat, lng, flat, flng) <= radius for lat, lng in samples for flat, flng in pts):
                hits[kind].add(key)
    score = sum(len(hits[k]) * w for k, w in FEATURE_WEIGHTS.items())
    return score, {DEBUG_KEYS[k]: len(v) for k, v in hits.items()}


def rank_paths(paths: List[Dict[str, Any]], features: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    for p in paths:
        p["securityScore"], p["debugInfo"] = score_path(path_coordinates(p), features)
    # stable: equal scores keep the engine's order
    return sorted(paths, key=lambda p: p["securityScore"], reverse=True)


# -----------------------------
# Orchestration
# -----------------------------

def plan_safe_route(db: Database, start: Dict[str, float], end: Dict[str, float], weights: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    distance = haversine_km(start["lat"], start["lng"], end["lat"], end["lng"])
    if distance > MAX_ROUTE_DISTANCE_KM:
        raise ApiError(
            400,
            "거리 제한 초과",
            message=f"출발지와 도착지 사이의 거리({distance:.2f}km)가 최대 허용 거리({MAX_ROUTE_DISTANCE_KM:g}km)를 초과합니다.",
            details={"distance": round(distance, 2), "limit": MAX_ROUTE_DISTANCE_KM},
        )

    payload = build_payload(start, end, weights, choose_profile(distance))
    data = fetch_routes(payload, distance)
    profile = payload["profile"]

    paths = data.get("paths") or []
    if not paths or not paths[0]:
        logger.error("[Route] no path found start=%s end=%s distance=%.2fkm profile=%s", start, end, distance, profile)
        if distance >= MAX_ROUTE_DISTANCE_KM * 0.8:
            message = "거리가 너무 멀어 경로를 찾을 수 없습니다. 더 가까운 목적지를 선택해주세요."
        else:
            message = "GraphHopper가 해당 좌표 간 경로를 찾을 수 없습니다. 지하철역의 경우 지상 출입구 좌표를 사용해주세요."
        raise ApiError(
            404,
            "경로를 찾을 수 없습니다",
            message=message,
            details={"start": start, "end": end, "distance": f"{distance:.2f}km", "profile": profile},
        )

    if data.get("message"):
        logger.error("[Route] GraphHopper message: %s", data["message"])
        raise ApiError(400, "GraphHopper 오류", message=data["message"], details=data)

    bbox = paths_bbox(paths)
    features = fetch_features(db, expand_bbox(bbox)) if bbox else {k: [] for k in FEATURE_SOURCES}
    data["paths"] = rank_paths(paths, features)
    data["distance"] = round(distance, 2)
    data["profile"] = profile
    logger.info(
        "[Route] %d path(s), profile=%s, scores=%s",
        len(paths), profile, [p["securityScore"] for p in data["paths"]],
    )
    return data
