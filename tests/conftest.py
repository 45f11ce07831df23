from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import create_document
from main import app, get_db, hash_password, encode_token
from schemas import Fee, Room, ROOM_CAPACITY


@pytest.fixture
def db():
    return mongomock.MongoClient()["hostel_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="student", name=None, email=None, password="secret123", **extra):
        counter["n"] += 1
        doc = {
            "name": name or f"{role.title()} {counter['n']}",
            "email": email or f"{role}{counter['n']}@hostel.com",
            "password_hash": hash_password(password),
            "role": role,
            "room_number": None,
            "room_type": None,
            "room_allocation_status": "none",
        }
        doc.update(extra)
        uid = create_document(db, "user", doc)
        return db.user.find_one({"_id": ObjectId(uid)})
    return _make


@pytest.fixture
def make_room(db):
    def _make(room_number, room_type="3-person", charge=4000, students=None):
        students = students or []
        capacity = ROOM_CAPACITY[room_type]
        room = Room(
            room_number=room_number,
            room_type=room_type,
            capacity=capacity,
            charge=charge,
            students=students,
            current_occupancy=len(students),
            is_available=len(students) < capacity,
        )
        rid = create_document(db, "room", room)
        return db.room.find_one({"_id": ObjectId(rid)})
    return _make


@pytest.fixture
def make_fee(db):
    def _make(student, amount=4000, room_charge=4000, mess_charge=0, fine=0, status="pending", remarks=""):
        fee = Fee(
            student_id=str(student["_id"]),
            student_name=student["name"],
            student_email=student["email"],
            amount=amount,
            room_charge=room_charge,
            mess_charge=mess_charge,
            fine=fine,
            status=status,
            due_date=datetime.now(timezone.utc) + timedelta(days=30),
            remarks=remarks,
        )
        fid = create_document(db, "fee", fee)
        return db.fee.find_one({"_id": ObjectId(fid)})
    return _make


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {encode_token(user)}"}
    return _headers


@pytest.fixture
def admin(make_user):
    return make_user("admin", name="Admin User", email="admin@hostel.com")


@pytest.fixture
def accountant(make_user):
    return make_user("accountant", name="Accountant User", email="accountant@hostel.com")
