import pytest


@pytest.fixture
def complaint(client, make_user, auth):
    student = make_user(name="Jane")
    res = client.post("/api/complaints", json={
        "category": "mess issue", "title": "Cold food", "description": "Dinner was served cold",
    }, headers=auth(student))
    assert res.status_code == 201
    return student, res.json()


def test_create_complaint(complaint):
    student, body = complaint
    assert body["status"] == "pending"
    assert body["student_id"] == str(student["_id"])
    assert body["student_name"] == "Jane"
    assert body["admin_response"] == ""


def test_create_complaint_validation(client, make_user, auth):
    student = make_user()
    res = client.post("/api/complaints", json={"category": "noise", "title": "x", "description": "y"}, headers=auth(student))
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "category"

    res = client.post("/api/complaints", json={"category": "other", "title": "   ", "description": "y"}, headers=auth(student))
    assert res.status_code == 400
    assert res.json()["message"] == "Title is required"


def test_list_complaints_by_role(client, admin, make_user, auth, complaint):
    other = make_user()
    client.post("/api/complaints", json={"category": "other", "title": "Wifi", "description": "Slow"}, headers=auth(other))

    own = client.get("/api/complaints", headers=auth(other)).json()
    assert [c["title"] for c in own] == ["Wifi"]

    everything = client.get("/api/complaints", headers=auth(admin)).json()
    assert len(everything) == 2
    assert {c["student"]["name"] for c in everything} == {"Jane", other["name"]}


def test_accountant_cannot_list_complaints(client, accountant, auth):
    assert client.get("/api/complaints", headers=auth(accountant)).status_code == 403


def test_student_cannot_read_another_students_complaint(client, make_user, auth, complaint):
    _, body = complaint
    other = make_user()
    assert client.get(f"/api/complaints/{body['id']}", headers=auth(other)).status_code == 403


def test_resolve_complaint(client, admin, auth, complaint):
    student, body = complaint
    res = client.put(f"/api/complaints/{body['id']}/resolve", json={"admin_response": "Fixed the warmer"}, headers=auth(admin))
    assert res.status_code == 200
    resolved = res.json()
    assert resolved["status"] == "resolved"
    assert resolved["admin_response"] == "Fixed the warmer"
    assert resolved["resolved_at"] is not None

    seen = client.get(f"/api/complaints/{body['id']}", headers=auth(student)).json()
    assert seen["status"] == "resolved"


def test_resolve_requires_response(client, admin, auth, complaint):
    _, body = complaint
    res = client.put(f"/api/complaints/{body['id']}/resolve", json={"admin_response": ""}, headers=auth(admin))
    assert res.status_code == 400


def test_delete_complaint(client, db, admin, auth, complaint):
    _, body = complaint
    res = client.delete(f"/api/complaints/{body['id']}", headers=auth(admin))
    assert res.json() == {"message": "Complaint deleted successfully"}
    assert db.complaint.count_documents({}) == 0
    assert client.delete(f"/api/complaints/{body['id']}", headers=auth(admin)).status_code == 404
