from datetime import datetime, timedelta

import pytest

import guardians
from database import PROTECTOR, utcnow
from settings import SOS_TTL_MINUTES


def parse(ts):
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


@pytest.fixture
def linked(client, make_user):
    """A invites B, B accepts."""
    a = make_user("user-a", "a@example.com", name="Alice")
    b = make_user("user-b", "b@example.com", name="Bob")
    client.post("/api/guardians", json={"email": "b@example.com"}, headers=a[1])
    link_id = client.get("/api/guardians", headers=b[1]).json()["incomingRequests"][0]["id"]
    client.patch("/api/guardians", json={"id": link_id, "action": "respond", "decision": "accept"}, headers=b[1])
    return a, b, link_id


def test_trigger_requires_guardians(client, make_user):
    _, headers = make_user("lonely", "lonely@example.com")
    res = client.post("/api/guardians/sos", json={"latitude": 35.1, "longitude": 129.0}, headers=headers)
    assert res.status_code == 409
    assert res.json()["error"] == "등록된 보호자가 없습니다."


def test_trigger_requires_location(client, linked):
    (_, a_headers), _, _ = linked
    res = client.post("/api/guardians/sos", json={"latitude": 35.1}, headers=a_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "유효한 위치 정보가 필요합니다."


def test_trigger_sets_expiry_from_ttl(client, db, linked):
    (_, a_headers), _, _ = linked
    before = utcnow()
    res = client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05, "accuracy": 15}, headers=a_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    expected = before + timedelta(minutes=SOS_TTL_MINUTES)
    assert abs((parse(body["expiresAt"]) - expected).total_seconds()) < 5

    row = db[PROTECTOR].find_one({})
    assert row["sos_sharing"] is True
    assert row["sos_triggered_by"] == "a@example.com"
    assert row["sos_precision_m"] == 15
    assert row["sos_ended_at"] is None


def test_guardian_sees_location_and_sharer_does_not(client, linked):
    (_, a_headers), (_, b_headers), link_id = linked
    client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05, "accuracy": 15}, headers=a_headers)

    [seen_by_b] = client.get("/api/guardians/active-sos", headers=b_headers).json()["sessions"]
    assert seen_by_b["id"] == link_id
    assert seen_by_b["triggeredByMe"] is False
    assert seen_by_b["latitude"] == 35.10
    assert seen_by_b["longitude"] == 129.05
    assert seen_by_b["precision"] == 15
    assert seen_by_b["partnerId"] == "user-a"
    assert seen_by_b["partnerName"] == "Alice"

    [seen_by_a] = client.get("/api/guardians/active-sos", headers=a_headers).json()["sessions"]
    assert seen_by_a["triggeredByMe"] is True
    assert "latitude" not in seen_by_a
    assert "longitude" not in seen_by_a
    assert "precision" not in seen_by_a

    a_entry = client.get("/api/guardians", headers=a_headers).json()["guardians"][0]
    assert a_entry["sos"]["triggeredByMe"] is True
    assert "latitude" not in a_entry["sos"]
    b_entry = client.get("/api/guardians", headers=b_headers).json()["guardians"][0]
    assert b_entry["sos"]["latitude"] == 35.10


def test_expired_share_is_inactive_without_stop(client, db, linked, monkeypatch):
    (_, a_headers), (b_user, b_headers), _ = linked
    client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05}, headers=a_headers)

    later = utcnow() + timedelta(minutes=SOS_TTL_MINUTES + 1)
    assert guardians.active_sessions(db, b_user, now=later) == []

    monkeypatch.setattr(guardians, "utcnow", lambda: later)
    assert client.get("/api/guardians/active-sos", headers=b_headers).json() == {"sessions": []}
    assert client.get("/api/guardians", headers=b_headers).json()["guardians"][0]["sos"] is None
    # the stale flag is still stored
    assert db[PROTECTOR].find_one({})["sos_sharing"] is True


def test_stop_only_ends_own_shares(client, db, linked):
    (_, a_headers), (_, b_headers), _ = linked
    client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05}, headers=a_headers)

    assert client.delete("/api/guardians/sos", headers=b_headers).json() == {"success": True}
    assert db[PROTECTOR].find_one({})["sos_sharing"] is True

    assert client.delete("/api/guardians/sos", headers=a_headers).json() == {"success": True}
    row = db[PROTECTOR].find_one({})
    assert row["sos_sharing"] is False
    assert row["sos_ended_at"] == row["sos_expires_at"]
    assert client.get("/api/guardians/active-sos", headers=b_headers).json() == {"sessions": []}


def test_trigger_covers_every_accepted_link(client, db, linked, make_user):
    (_, a_headers), _, _ = linked
    _, c_headers = make_user("user-c", "c@example.com")
    _, d_headers = make_user("user-d", "d@example.com")
    client.post("/api/guardians", json={"email": "c@example.com"}, headers=a_headers)
    link_id = client.get("/api/guardians", headers=c_headers).json()["incomingRequests"][0]["id"]
    client.patch("/api/guardians", json={"id": link_id, "action": "respond", "decision": "accept"}, headers=c_headers)
    # pending only, must not receive the share
    client.post("/api/guardians", json={"email": "d@example.com"}, headers=a_headers)

    client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05}, headers=a_headers)
    assert db[PROTECTOR].count_documents({"sos_sharing": True}) == 2
    assert len(client.get("/api/guardians/active-sos", headers=c_headers).json()["sessions"]) == 1
    assert client.get("/api/guardians/active-sos", headers=d_headers).json() == {"sessions": []}


def test_both_sides_see_the_sharer_as_partner(client, linked):
    (_, a_headers), (_, b_headers), _ = linked
    client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05}, headers=a_headers)

    for headers in (a_headers, b_headers):
        [session] = client.get("/api/guardians/active-sos", headers=headers).json()["sessions"]
        assert session["partnerId"] == "user-a"
        assert session["partnerName"] == "Alice"
        assert session["partnerEmail"] == "a@example.com"


def test_target_sharer_is_named_partner(client, linked):
    (_, a_headers), (_, b_headers), _ = linked
    client.post("/api/guardians/sos", json={"latitude": 35.10, "longitude": 129.05}, headers=b_headers)

    [seen_by_a] = client.get("/api/guardians/active-sos", headers=a_headers).json()["sessions"]
    assert seen_by_a["partnerId"] == "user-b"
    assert seen_by_a["partnerName"] == "Bob"
    assert seen_by_a["latitude"] == 35.10


def test_trigger_skips_link_revoked_mid_request(db, linked, monkeypatch):
    (a_user, _), _, _ = linked
    real_now = guardians.utcnow

    def revoke_then_now():
        db[PROTECTOR].update_many({}, {"$set": {"status": "revoked"}})
        return real_now()

    monkeypatch.setattr(guardians, "utcnow", revoke_then_now)
    guardians.trigger_sos(db, a_user, 35.10, 129.05)
    row = db[PROTECTOR].find_one({})
    assert row["status"] == "revoked"
    assert row["sos_sharing"] is False
    assert row["sos_triggered_by"] is None
