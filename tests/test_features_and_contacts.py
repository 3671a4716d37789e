import pytest

BOX = {"swLat": 35.0, "swLng": 129.0, "neLat": 35.2, "neLng": 129.2}


@pytest.fixture
def features(db):
    db["security_lights"].insert_many([
        {"latitude": 35.1, "longitude": 129.1, "si_do": "부산광역시"},
        {"latitude": 37.5, "longitude": 127.0, "si_do": "서울특별시"},
    ])
    db["cctv_installations"].insert_one({"latitude": 35.15, "longitude": 129.05})
    db["safe_return_paths"].insert_one({"latitude": 35.19, "longitude": 129.19})
    db["women_safe_return_paths"].insert_many([
        {"name": "end inside", "start_latitude": 36.0, "start_longitude": 128.0, "end_latitude": 35.1, "end_longitude": 129.1},
        {"name": "outside", "start_latitude": 36.0, "start_longitude": 128.0, "end_latitude": 36.1, "end_longitude": 128.1},
    ])


def test_security_lights_in_box(client, features):
    res = client.get("/api/security-lights", params=BOX)
    lights = res.json()["securityLights"]
    assert len(lights) == 1
    assert lights[0]["si_do"] == "부산광역시"
    assert "id" in lights[0]


def test_corner_order_does_not_matter(client, features):
    flipped = {"swLat": 35.2, "swLng": 129.2, "neLat": 35.0, "neLng": 129.0}
    assert len(client.get("/api/cctv", params=flipped).json()["cctv"]) == 1


def test_security_lights_require_box(client):
    res = client.get("/api/security-lights")
    assert res.status_code == 400
    assert res.json()["error"] == "지도 영역 정보가 필요합니다."


def test_bells_and_paths_empty_without_box(client, features):
    assert client.get("/api/emergency-bells").json() == {"bells": []}
    assert client.get("/api/safe-return-paths").json() == {"paths": []}
    assert len(client.get("/api/emergency-bells", params=BOX).json()["bells"]) == 1


def test_safe_paths_match_either_endpoint(client, features):
    paths = client.get("/api/safe-return-paths", params=BOX).json()["paths"]
    assert [p["name"] for p in paths] == ["end inside"]


# -----------------------------
# Emergency contacts
# -----------------------------

@pytest.fixture
def owner(make_user):
    return make_user("user-a", "a@example.com")[1]


def add(client, headers, name, priority=None):
    body = {"name": name, "phone": "010-0000-0000"}
    if priority is not None:
        body["priority"] = priority
    return client.post("/api/emergency-contacts", json=body, headers=headers).json()["contact"]


def order(client, headers):
    return [(c["name"], c["priority"]) for c in client.get("/api/emergency-contacts", headers=headers).json()["contacts"]]


def test_contacts_require_name_and_phone(client, owner):
    res = client.post("/api/emergency-contacts", json={"name": "엄마"}, headers=owner)
    assert res.status_code == 400


def test_contact_priorities_append_and_shift(client, owner):
    add(client, owner, "mom")
    add(client, owner, "dad")
    add(client, owner, "sister", priority=1)
    assert order(client, owner) == [("sister", 1), ("mom", 2), ("dad", 3)]


def test_contact_update_swaps_priority(client, owner):
    mom = add(client, owner, "mom")
    add(client, owner, "dad")
    res = client.put(f"/api/emergency-contacts/{mom['id']}", json={"name": "mom", "phone": "010-1", "priority": 2}, headers=owner)
    assert res.json()["contact"]["priority"] == 2
    assert order(client, owner) == [("dad", 1), ("mom", 2)]


def test_contact_update_unknown_is_404(client, owner):
    res = client.put("/api/emergency-contacts/0123456789abcdef01234567", json={"name": "x", "phone": "1"}, headers=owner)
    assert res.status_code == 404


def test_contact_delete_closes_gap(client, owner, make_user):
    add(client, owner, "mom")
    dad = add(client, owner, "dad")
    add(client, owner, "sister")
    _, other = make_user("user-b", "b@example.com")
    assert client.delete(f"/api/emergency-contacts/{dad['id']}", headers=other).status_code == 404

    assert client.delete(f"/api/emergency-contacts/{dad['id']}", headers=owner).json() == {"success": True}
    assert order(client, owner) == [("mom", 1), ("sister", 2)]
