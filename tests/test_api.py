import pytest

from announcements import user_room
from app import socketio
from conftest import login
from models import db, User, BloodRequest, ROLE_HOSPITAL


def register(client, username, **fields):
    body = {"username": username, "password": "secret", "name": username.title()}
    body.update(fields)
    return client.post("/api/register", json=body)


def test_anonymous_requests_are_unauthorized(client):
    for method, path in [("get", "/api/auth/user"), ("post", "/api/requests"),
                         ("get", "/api/hospital/inventory"), ("get", "/api/announcements"),
                         ("patch", "/api/requests/1/accept")]:
        resp = getattr(client, method)(path)
        assert resp.status_code == 401, path
        assert resp.get_json()["message"]


def test_register_logs_in(client):
    resp = register(client, "alice", blood_group="O+", can_donate=True)
    assert resp.status_code == 201
    assert resp.get_json()["is_verified"] is False

    me = client.get("/api/auth/user").get_json()
    assert me["username"] == "alice"
    assert "password_hash" not in me


def test_register_duplicate_is_400(client):
    register(client, "bob")
    resp = register(client, "bob")
    assert resp.status_code == 400
    assert resp.get_json() == {"message": "Username already exists"}


def test_login_and_logout(client, make_user):
    make_user(username="carol")
    assert login(client, "carol", "wrong").status_code == 401
    assert login(client, "carol").status_code == 200
    assert client.get("/api/auth/user").status_code == 200
    client.post("/api/logout")
    assert client.get("/api/auth/user").status_code == 401


def test_malformed_json_is_400(client, make_user):
    make_user(username="dave")
    login(client, "dave")
    resp = client.post("/api/requests", data="{not json", content_type="application/json")
    assert resp.status_code == 400


def test_donor_gets_403_on_hospital_endpoints(client, make_user):
    make_user(username="erin")
    login(client, "erin")
    for method, path in [("get", "/api/hospital/users"), ("get", "/api/hospital/stats"),
                         ("get", "/api/hospital/requests"), ("patch", "/api/hospital/inventory"),
                         ("post", "/api/announcements")]:
        resp = getattr(client, method)(path, json={})
        assert resp.status_code == 403, path


def test_full_request_flow(app, hospital, make_user):
    make_user(username="u1", blood_group="O+")
    make_user(username="u2", name="Second Donor", blood_group="O+")
    make_user(username="u3", blood_group="O+")
    requester, donor, late = app.test_client(), app.test_client(), app.test_client()
    hosp = app.test_client()
    login(requester, "u1")
    login(donor, "u2")
    login(late, "u3")
    login(hosp, "hospital")

    # A: create
    resp = requester.post("/api/requests", json={"hospital_id": hospital.id, "blood_group": "O+",
                                                 "location": "City", "units_needed": 1})
    assert resp.status_code == 201
    created = resp.get_json()
    rid = created["id"]
    assert created["status"] == "pending"
    assert created["matched_donor_id"] is None

    incoming = donor.get("/api/requests/incoming").get_json()
    assert [r["id"] for r in incoming] == [rid]
    assert requester.get("/api/requests/incoming").get_json() == []

    broadcast = donor.get("/api/announcements").get_json()
    assert [a["related_request_id"] for a in broadcast] == [rid]

    # B: accept, then a late second accept
    resp = donor.patch(f"/api/requests/{rid}/accept")
    assert resp.status_code == 200
    donor_id = resp.get_json()["matched_donor_id"]
    assert resp.get_json()["status"] == "accepted"

    resp = late.patch(f"/api/requests/{rid}/accept")
    assert resp.status_code == 409
    assert requester.get(f"/api/requests/{rid}").get_json()["matched_donor"]["id"] == donor_id

    notes = requester.get("/api/announcements").get_json()
    assert any("Second Donor" in a["message"] for a in notes)

    # C: complete, twice
    assert hosp.patch(f"/api/requests/{rid}/complete").status_code == 200
    assert hosp.patch(f"/api/requests/{rid}/complete").status_code == 409
    me = donor.get("/api/auth/user").get_json()
    assert me["donation_count"] == 1
    assert me["last_donation_date"] is not None
    assert [r["id"] for r in donor.get("/api/requests/completed").get_json()] == [rid]

    listed = hosp.get("/api/hospital/requests").get_json()
    assert listed[0]["status"] == "completed"


def test_cancel_and_delete_over_http(client, hospital, make_user):
    make_user(username="frank")
    login(client, "frank")
    rid = client.post("/api/requests", json={"hospital_id": hospital.id, "blood_group": "A-",
                                             "location": "Town"}).get_json()["id"]

    resp = client.patch(f"/api/requests/{rid}/cancel")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"
    assert client.patch(f"/api/requests/{rid}/cancel").status_code == 409

    assert client.delete(f"/api/requests/{rid}").status_code == 200
    assert client.get(f"/api/requests/{rid}").status_code == 404
    assert client.patch("/api/requests/999/accept").status_code == 404


def test_missing_fields_on_create(client, make_user):
    make_user(username="gina")
    login(client, "gina")
    resp = client.post("/api/requests", json={"blood_group": "O+"})
    assert resp.status_code == 400


def test_hospital_inventory_endpoints(client, hospital):
    login(client, "hospital")
    rows = client.get("/api/hospital/inventory").get_json()
    assert len(rows) == 8
    assert all(r["units_available"] == 0 for r in rows)

    client.patch("/api/hospital/inventory", json={"blood_group": "O+", "delta": 5})
    resp = client.patch("/api/hospital/inventory", json={"blood_group": "O+", "delta": -2})
    assert resp.get_json()["units_available"] == 3

    assert client.patch("/api/hospital/inventory", json={"blood_group": "O+"}).status_code == 400
    assert len(client.get("/api/hospital/inventory").get_json()) == 8


def test_hospital_user_management(client, hospital, make_user):
    pending_id = make_user(username="henry", verified=False).id
    login(client, "hospital")

    resp = client.post("/api/hospital/users", json={"name": "Walk In", "blood_group": "B+", "location": "City"})
    assert resp.status_code == 201
    walk_in = resp.get_json()
    assert walk_in["is_verified"] is True
    assert client.delete(f"/api/hospital/users/{walk_in['id']}").status_code == 409

    resp = client.patch(f"/api/hospital/users/{pending_id}/status", json={"availability_status": False})
    assert resp.get_json()["availability_status"] is False

    assert client.delete(f"/api/hospital/users/{pending_id}").status_code == 200
    db.session.expire_all()
    assert db.session.get(User, pending_id) is None

    other = make_user(username="ivy", verified=False)
    assert client.patch(f"/api/hospital/users/{other.id}/verify").get_json()["is_verified"] is True

    users = client.get("/api/hospital/users").get_json()
    assert {u["username"] for u in users} >= {"hospital", "ivy"}
    assert client.get("/api/hospital/stats").get_json()["total_hospitals"] == 1


def test_profile_update_and_donor_search(client, make_user):
    make_user(username="jack", blood_group="A+", location="Pune")
    make_user(username="kate", blood_group="A+", location="Pune")
    login(client, "jack")

    resp = client.patch("/api/users/me", json={"phone": "12345", "blood_group": "bad"})
    assert resp.status_code == 400
    resp = client.patch("/api/users/me", json={"phone": "12345"})
    assert resp.get_json()["phone"] == "12345"

    found = client.get("/api/donors?blood_group=A%2B&location=pune&available=true").get_json()
    assert [d["username"] for d in found] == ["kate"]


def test_hospital_announcement_post(client, hospital, make_user):
    make_user(username="liam", blood_group="B-")
    login(client, "hospital")
    resp = client.post("/api/announcements", json={"title": "Drive", "message": "Saturday",
                                                   "target_blood_group": "B-"})
    assert resp.status_code == 201

    client.post("/api/logout")
    login(client, "liam")
    assert [a["title"] for a in client.get("/api/announcements").get_json()] == ["Drive"]


def test_hospital_creates_request_for_user(client, hospital, make_user):
    u = make_user(username="mia")
    login(client, "hospital")
    resp = client.post("/api/requests", json={"requested_by_id": u.id, "blood_group": "O-",
                                              "location": "ER", "priority": "emergency"})
    assert resp.status_code == 201
    assert resp.get_json()["hospital_id"] == hospital.id
    assert User.query.filter_by(role=ROLE_HOSPITAL).count() == 1


@pytest.mark.parametrize("field, value", [("location", 123), ("notes", ["x"]), ("location", {"city": "X"})])
def test_create_request_with_non_text_field_is_400(client, hospital, make_user, field, value):
    make_user(username="nora")
    login(client, "nora")
    body = {"hospital_id": hospital.id, "blood_group": "O+", "location": "City", field: value}
    resp = client.post("/api/requests", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["message"]
    assert BloodRequest.query.count() == 0


@pytest.mark.parametrize("body", [{"username": 5, "password": "pw"},
                                  {"username": "oscar", "password": 5},
                                  {"username": "oscar", "password": "pw", "name": 1}])
def test_register_with_non_text_field_is_400(client, body):
    resp = client.post("/api/register", json=body)
    assert resp.status_code == 400
    assert User.query.filter_by(username="oscar").count() == 0


def test_login_with_non_text_field_is_400(client, make_user):
    make_user(username="pia")
    assert client.post("/api/login", json={"username": ["pia"], "password": "secret"}).status_code == 400
    assert client.post("/api/login", json={"username": "pia", "password": 7}).status_code == 400


def test_profile_and_hospital_user_non_text_fields_are_400(client, hospital, make_user):
    make_user(username="quinn")
    login(client, "quinn")
    assert client.patch("/api/users/me", json={"location": 5}).status_code == 400

    client.post("/api/logout")
    login(client, "hospital")
    resp = client.post("/api/hospital/users", json={"name": {"n": 1}, "blood_group": "B+", "location": "City"})
    assert resp.status_code == 400


def test_announcement_with_non_text_field_is_400(client, hospital):
    login(client, "hospital")
    assert client.post("/api/announcements", json={"title": 1, "message": "m"}).status_code == 400
    assert client.post("/api/announcements", json={"title": "t", "message": [1]}).status_code == 400


def test_socket_join_only_own_room(app, client, make_user):
    me = make_user(username="rita")
    other_id = make_user(username="sam").id
    login(client, "rita")
    sock = socketio.test_client(app, flask_test_client=client)

    assert sock.emit("join", {"user_id": other_id}, callback=True) is False
    socketio.emit("announcement", {"title": "not yours"}, to=user_room(other_id))
    assert sock.get_received() == []

    assert sock.emit("join", {"user_id": me.id}, callback=True) is True
    socketio.emit("announcement", {"title": "yours"}, to=user_room(me.id))
    received = sock.get_received()
    assert [(m["name"], m["args"][0]["title"]) for m in received] == [("announcement", "yours")]
    sock.disconnect()


def test_socket_join_requires_login(app, client):
    sock = socketio.test_client(app, flask_test_client=client)
    assert sock.emit("join", {}, callback=True) is False
    sock.disconnect()
