import main
from main import apply_fine, record_payment


def test_create_fee_defaults_amount(client, accountant, make_user, auth):
    student = make_user()
    res = client.post("/api/fees", json={
        "student_id": str(student["_id"]), "room_charge": 4000, "mess_charge": 1500, "due_date": "2026-11-30",
    }, headers=auth(accountant))
    assert res.status_code == 201
    fee = res.json()
    assert fee["amount"] == 5500
    assert fee["fine"] == 0
    assert fee["status"] == "pending"
    assert fee["student_name"] == student["name"]


def test_create_fee_for_non_student(client, admin, accountant, auth):
    res = client.post("/api/fees", json={
        "student_id": str(accountant["_id"]), "room_charge": 4000, "due_date": "2026-11-30",
    }, headers=auth(admin))
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid student ID"


def test_student_cannot_create_fee(client, make_user, auth):
    student = make_user()
    res = client.post("/api/fees", json={
        "student_id": str(student["_id"]), "room_charge": 4000, "due_date": "2026-11-30",
    }, headers=auth(student))
    assert res.status_code == 403


def test_add_fine_to_pending_fee(client, accountant, make_user, make_fee, auth):
    fee = make_fee(make_user(), amount=4000, fine=0)
    res = client.put(f"/api/fees/{fee['_id']}/add-fine", json={"fine": 500, "amount": 4500, "reason": "late"}, headers=auth(accountant))
    assert res.status_code == 200
    body = res.json()
    assert body["fine"] == 500
    assert body["amount"] == 4500
    assert body["remarks"] == "Fine added: late"


def test_add_fine_appends_to_existing_remarks(client, accountant, make_user, make_fee, auth):
    fee = make_fee(make_user(), amount=4500, fine=500, remarks="Fine added: late")
    res = client.put(f"/api/fees/{fee['_id']}/add-fine", json={"fine": 200, "reason": "damage"}, headers=auth(accountant))
    body = res.json()
    assert body["fine"] == 700
    assert body["amount"] == 4700
    assert body["remarks"] == "Fine added: late | Fine added: damage"


def test_add_fine_to_paid_fee_rejected(client, db, accountant, make_user, make_fee, auth):
    fee = make_fee(make_user(), status="paid")
    res = client.put(f"/api/fees/{fee['_id']}/add-fine", json={"fine": 500, "reason": "late"}, headers=auth(accountant))
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot add fine to a paid fee record"
    assert db.fee.find_one({"_id": fee["_id"]})["fine"] == 0


def test_add_fine_amount_mismatch(client, accountant, make_user, make_fee, auth):
    fee = make_fee(make_user(), amount=4000)
    res = client.put(f"/api/fees/{fee['_id']}/add-fine", json={"fine": 500, "amount": 9000}, headers=auth(accountant))
    assert res.status_code == 400


def test_add_fine_unknown_fee(client, accountant, auth):
    res = client.put("/api/fees/64b7f0c2a1b2c3d4e5f60718/add-fine", json={"fine": 100}, headers=auth(accountant))
    assert res.status_code == 404
    res = client.put("/api/fees/not-an-id/add-fine", json={"fine": 100}, headers=auth(accountant))
    assert res.status_code == 400


def test_mark_paid_is_terminal(client, accountant, make_user, make_fee, auth):
    fee = make_fee(make_user())
    res = client.put(f"/api/fees/{fee['_id']}/pay", json={"payment_method": "cash"}, headers=auth(accountant))
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "paid"
    assert body["payment_method"] == "cash"
    assert body["paid_date"] is not None

    again = client.put(f"/api/fees/{fee['_id']}/pay", json={}, headers=auth(accountant))
    assert again.status_code == 400


def test_status_summary_is_per_student(client, make_user, make_fee, auth):
    alice, bob = make_user(), make_user()
    make_fee(alice, status="paid")
    make_fee(alice, fine=300)
    make_fee(alice, status="overdue", fine=100)
    make_fee(bob, fine=900)
    make_fee(bob, fine=50)

    body = client.get("/api/fees/status", headers=auth(alice)).json()
    assert (body["paid"], body["pending"], body["overdue"]) == (1, 1, 1)
    assert body["total_fine"] == 400
    assert len(body["fees"]) == 3
    assert {f["student_id"] for f in body["fees"]} == {str(alice["_id"])}


def test_pending_fines_report(client, accountant, make_user, make_fee, auth):
    student = make_user()
    make_fee(student, fine=500)
    make_fee(student, fine=300, status="overdue")
    make_fee(student, fine=1000, status="paid")
    make_fee(student, fine=0)

    res = client.get("/api/fees/pending-fines", headers=auth(accountant))
    assert res.status_code == 200
    body = res.json()
    assert body["total_pending_fine"] == 800
    assert sorted(f["fine"] for f in body["fees"]) == [300, 500]
    assert body["fees"][0]["student"]["name"] == student["name"]


def test_pending_fines_accountant_only(client, admin, auth):
    assert client.get("/api/fees/pending-fines", headers=auth(admin)).status_code == 403


def test_list_fees_by_role(client, accountant, make_user, make_fee, auth):
    alice, bob = make_user(), make_user()
    make_fee(alice)
    make_fee(bob)
    own = client.get("/api/fees", headers=auth(alice)).json()
    assert [f["student_id"] for f in own] == [str(alice["_id"])]

    everything = client.get("/api/fees", headers=auth(accountant)).json()
    assert len(everything) == 2
    assert all(f["student"] for f in everything)


def test_fine_written_against_stale_read_is_refused(db, make_user, make_fee):
    fee = make_fee(make_user(), amount=4000)
    stale = db.fee.find_one({"_id": fee["_id"]})
    assert apply_fine(db, fee, 500, "late")["remarks"] == "Fine added: late"

    assert apply_fine(db, stale, 300, "damage") is None
    stored = db.fee.find_one({"_id": fee["_id"]})
    assert (stored["fine"], stored["amount"]) == (500, 4500)
    assert stored["remarks"] == "Fine added: late"


def test_concurrent_fine_returns_conflict(client, db, accountant, make_user, make_fee, auth, monkeypatch):
    fee = make_fee(make_user(), amount=4000)
    real_apply_fine = main.apply_fine

    def fine_lands_first(db_, seen, fine, reason):
        real_apply_fine(db_, db_.fee.find_one({"_id": seen["_id"]}), 500, "late")
        return real_apply_fine(db_, seen, fine, reason)

    monkeypatch.setattr(main, "apply_fine", fine_lands_first)
    res = client.put(f"/api/fees/{fee['_id']}/add-fine", json={"fine": 300, "amount": 4300, "reason": "damage"}, headers=auth(accountant))
    assert res.status_code == 409
    stored = db.fee.find_one({"_id": fee["_id"]})
    assert (stored["fine"], stored["amount"]) == (500, 4500)
    assert stored["remarks"] == "Fine added: late"


def test_pay_appends_to_fine_remarks(client, accountant, make_user, make_fee, auth):
    fee = make_fee(make_user(), amount=4500, fine=500, remarks="Fine added: late")
    res = client.put(f"/api/fees/{fee['_id']}/pay", json={"payment_method": "cash", "remarks": "paid at desk"}, headers=auth(accountant))
    assert res.status_code == 200
    assert res.json()["remarks"] == "Fine added: late | paid at desk"


def test_payment_against_stale_read_keeps_fine_note(db, make_user, make_fee):
    fee = make_fee(make_user(), amount=4000)
    apply_fine(db, db.fee.find_one({"_id": fee["_id"]}), 500, "late")
    assert record_payment(db, fee, "cash", "paid at desk") is None
    stored = db.fee.find_one({"_id": fee["_id"]})
    assert stored["status"] == "pending"
    assert stored["remarks"] == "Fine added: late"
