import os
import hmac
import hashlib
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone, time
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from starlette.exceptions import HTTPException as StarletteHTTPException
import jwt
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import connect, disconnect, is_ready, create_document, get_documents
from schemas import (
    User, RegisterRequest, LoginRequest,
    Room, RoomCreateRequest, RoomChargesRequest, RoomAllocationRequest, ApproveAllocationRequest,
    Fee, FeeCreateRequest, PayRequest, AddFineRequest,
    Complaint, ComplaintRequest, ResolveComplaintRequest,
    Notification, NotificationRequest, ReadReceipt,
    MessMenu, MessMenuRequest, MessTimingsRequest, Meal,
    FinancialReport,
    WEEKDAYS, ROOM_CAPACITY, DEFAULT_TIMINGS,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------------
# App, lifecycle & CORS
# ---------------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.db = connect()
    except PyMongoError:
        logger.exception("Could not connect to MongoDB; requests will be rejected with 503")
        app.state.db = None
    yield
    disconnect(app.state.db)
    app.state.db = None


app = FastAPI(title="Hostel Management API", lifespan=lifespan)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return db

# ---------------------------------------------------------------------------------
# Error envelopes: every failure is returned as {"message": ...}
# ---------------------------------------------------------------------------------
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        errors.append({"field": ".".join(loc), "message": err.get("msg")})
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Server error"})

# ---------------------------------------------------------------------------------
# Auth & JWT helpers
# ---------------------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", str(7 * 24 * 60)))
security = HTTPBearer(auto_error=False)


class AuthUser(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: str


def hash_password(raw: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{salt}{raw}".encode("utf-8")).hexdigest()
    return f"{salt}${digest}"


def verify_password(raw: str, stored: str) -> bool:
    if not stored or "$" not in stored:
        return False
    salt = stored.split("$", 1)[0]
    return hmac.compare_digest(hash_password(raw, salt), stored)


def encode_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRES_MIN),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(security), db: Database = Depends(get_db)) -> AuthUser:
    if creds is None:
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    try:
        payload = jwt.decode(creds.credentials, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.user.find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return AuthUser(id=str(user["_id"]), name=user.get("name"), email=user.get("email"), role=user.get("role"))


def require_roles(roles: List[str]):
    def checker(user: AuthUser = Depends(get_current_user)):
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Not authorized")
        return user
    return checker

# ---------------------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------------------
USER_SUMMARY = {"name": 1, "email": 1, "student_number": 1, "role": 1}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid id")
    return ObjectId(id_str)


def serialize(value):
    """Render a Mongo document as JSON-friendly data: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize(v)
        return out
    if isinstance(value, ObjectId):
        return str(value)
    return value


def public_user(doc: dict) -> dict:
    out = serialize(doc)
    out.pop("password_hash", None)
    return out


def populate_users(db: Database, docs: List[dict], field: str, target: str) -> List[dict]:
    """Attach the referenced user (by string id in `field`) under `target` on each serialized doc."""
    ids = {d.get(field) for d in docs if d.get(field) and ObjectId.is_valid(d.get(field))}
    users = {}
    if ids:
        for u in db.user.find({"_id": {"$in": [ObjectId(i) for i in ids]}}, USER_SUMMARY):
            users[str(u["_id"])] = serialize(u)
    out = []
    for d in docs:
        item = serialize(d)
        item[target] = users.get(d.get(field))
        out.append(item)
    return out


def find_student(db: Database, student_id: str) -> Optional[dict]:
    if not ObjectId.is_valid(student_id):
        return None
    student = db.user.find_one({"_id": ObjectId(student_id)})
    if not student or student.get("role") != "student":
        return None
    return student


# ---------------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------------
@app.get("/")
def root():
    return {"message": "Hostel Management API running"}


@app.get("/api/health")
def health(request: Request):
    db = getattr(request.app.state, "db", None)
    return {
        "status": "OK",
        "message": "Backend is running",
        "timestamp": _now().isoformat(),
        "database": "Connected" if is_ready(db) else "Disconnected",
    }

# ---------------------------------------------------------------------------------
# Auth routes
# ---------------------------------------------------------------------------------
@app.post("/api/auth/register", status_code=201)
def register(data: RegisterRequest, db: Database = Depends(get_db)):
    email = str(data.email).lower()
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    if data.role in ("admin", "accountant") and db.user.find_one({"role": data.role}):
        raise HTTPException(status_code=400, detail=f"An {data.role} account already exists")
    if db.user.find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    if data.student_number and db.user.find_one({"student_number": data.student_number}):
        raise HTTPException(status_code=400, detail="Student number already registered")

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(data.password),
        role=data.role,
        student_number=data.student_number if data.role == "student" else None,
    )
    doc = user.model_dump()
    if doc["student_number"] is None:
        # sparse unique index: leave the field out rather than storing null
        doc.pop("student_number")
    try:
        uid = create_document(db, "user", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    created = db.user.find_one({"_id": ObjectId(uid)})
    logger.info("Registered %s account %s", data.role, email)
    return {"token": encode_token(created), "user": public_user(created)}


@app.post("/api/auth/login")
def login(data: LoginRequest, db: Database = Depends(get_db)):
    user = db.user.find_one({"email": str(data.email).lower()})
    if not user or not verify_password(data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return {"token": encode_token(user), "user": public_user(user)}


@app.get("/api/auth/me")
def me(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return public_user(db.user.find_one({"_id": ObjectId(user.id)}))


@app.get("/api/auth/check-roles")
def check_roles(db: Database = Depends(get_db)):
    return {
        "admin_exists": db.user.count_documents({"role": "admin"}) > 0,
        "accountant_exists": db.user.count_documents({"role": "accountant"}) > 0,
    }

# ---------------------------------------------------------------------------------
# Students: room allocation requests
# ---------------------------------------------------------------------------------
@app.post("/api/students/room-allocation")
def request_room(body: RoomAllocationRequest, user: AuthUser = Depends(require_roles(["student"])), db: Database = Depends(get_db)):
    student = db.user.find_one({"_id": ObjectId(user.id)})
    status = student.get("room_allocation_status", "none")
    if status not in ("none", "rejected"):
        raise HTTPException(status_code=400, detail=f"You already have a {status} room allocation request")

    res = db.user.update_one(
        {"_id": student["_id"], "room_allocation_status": status},
        {"$set": {"room_type": body.room_type, "room_allocation_status": "pending", "updated_at": _now()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=400, detail="Room allocation request changed, please retry")
    logger.info("Student %s requested a %s room", user.id, body.room_type)
    return {"message": "Room allocation request submitted successfully", "room_type": body.room_type, "status": "pending"}


@app.get("/api/students/room-details")
def room_details(user: AuthUser = Depends(require_roles(["student"])), db: Database = Depends(get_db)):
    student = db.user.find_one({"_id": ObjectId(user.id)})
    details = {
        "room_number": student.get("room_number"),
        "room_type": student.get("room_type"),
        "status": student.get("room_allocation_status", "none"),
        "room": None,
    }
    if student.get("room_number"):
        room = db.room.find_one({"room_number": student["room_number"]})
        if room:
            item = populate_rooms(db, [room])[0]
            item["students"] = [s for s in item["students"] if s.get("id") != user.id]
            details["room"] = item
    return details

# ---------------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------------
def populate_rooms(db: Database, rooms: List[dict]) -> List[dict]:
    ids = {sid for r in rooms for sid in r.get("students", []) if ObjectId.is_valid(sid)}
    users = {}
    if ids:
        for u in db.user.find({"_id": {"$in": [ObjectId(i) for i in ids]}}, {"name": 1, "email": 1, "student_number": 1}):
            users[str(u["_id"])] = serialize(u)
    out = []
    for r in rooms:
        item = serialize(r)
        item["students"] = [users.get(sid, {"id": sid}) for sid in r.get("students", [])]
        out.append(item)
    return out


def charges_by_type(rooms: List[dict]) -> dict:
    charges = {t: 0 for t in ROOM_CAPACITY}
    for room in rooms:
        if charges.get(room.get("room_type")) == 0:
            charges[room["room_type"]] = room.get("charge", 0)
    return charges


def claim_seat(db: Database, room: dict, student_id: str) -> Optional[dict]:
    """Atomically add a student to a room only while it still has a free place.

    The write is conditioned on the occupancy just read, so `is_available` is set in the
    same update that takes the seat. Returns the updated room, or None if the room filled
    up (or already holds the student).
    """
    for _ in range(room["capacity"] + 1):
        current = db.room.find_one({"_id": room["_id"]})
        if not current or student_id in current.get("students", []):
            return None
        occupancy = current.get("current_occupancy", 0)
        if occupancy >= current["capacity"]:
            return None
        claimed = db.room.find_one_and_update(
            {"_id": current["_id"], "current_occupancy": occupancy, "students": {"$ne": student_id}},
            {
                "$push": {"students": student_id},
                "$inc": {"current_occupancy": 1},
                "$set": {"is_available": occupancy + 1 < current["capacity"], "updated_at": _now()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if claimed:
            return claimed
    return None


def release_seat(db: Database, room_id: ObjectId, student_id: str) -> None:
    db.room.update_one(
        {"_id": room_id, "students": student_id},
        {"$pull": {"students": student_id}, "$inc": {"current_occupancy": -1}, "$set": {"is_available": True, "updated_at": _now()}},
    )


@app.get("/api/rooms")
def list_rooms(_: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    rooms = get_documents(db, "room", sort=[("room_number", 1)])
    return {"rooms": populate_rooms(db, rooms), "charges": charges_by_type(rooms)}


@app.get("/api/rooms/charges")
def get_room_charges(_: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return charges_by_type(get_documents(db, "room"))


@app.put("/api/rooms/charges")
def update_room_charges(body: RoomChargesRequest, _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    requested = {"2-person": body.two_person, "3-person": body.three_person, "4-person": body.four_person}
    updates = []
    for room_type, charge in requested.items():
        if charge is None:
            continue
        db.room.update_many({"room_type": room_type}, {"$set": {"charge": charge, "updated_at": _now()}})
        updates.append({"type": room_type, "charge": charge})
    logger.info("Room charges updated: %s", updates)
    return {"message": "Room charges updated successfully", "updates": updates}


@app.get("/api/rooms/allocations")
def room_allocations(_: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    students = get_documents(db, "user", {"role": "student"}, sort=[("name", 1)])
    rooms = get_documents(db, "room", sort=[("room_number", 1)])
    return {"students": [public_user(s) for s in students], "rooms": populate_rooms(db, rooms)}


@app.post("/api/rooms", status_code=201)
def create_room(body: RoomCreateRequest, _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    if db.room.find_one({"room_number": body.room_number}):
        raise HTTPException(status_code=400, detail="Room number already exists")
    room = Room(room_number=body.room_number, room_type=body.room_type, capacity=ROOM_CAPACITY[body.room_type], charge=body.charge)
    try:
        rid = create_document(db, "room", room)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Room number already exists")
    return serialize(db.room.find_one({"_id": ObjectId(rid)}))


@app.post("/api/rooms/seed")
def seed_rooms(_: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    """Seed a few rooms for demo purposes."""
    if db.room.count_documents({}) > 0:
        return {"seeded": False}
    demo = [("101", "2-person", 5000), ("102", "4-person", 3000), ("103", "3-person", 4000),
            ("201", "2-person", 5000), ("202", "3-person", 4000), ("203", "4-person", 3000)]
    for number, room_type, charge in demo:
        create_document(db, "room", Room(room_number=number, room_type=room_type, capacity=ROOM_CAPACITY[room_type], charge=charge))
    return {"seeded": True}

# ---------------------------------------------------------------------------------
# Admin: room requests, students, reports
# ---------------------------------------------------------------------------------
@app.get("/api/admin/room-requests")
def room_requests(_: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    requests = get_documents(db, "user", {"role": "student", "room_allocation_status": "pending"}, sort=[("updated_at", 1)])
    return [public_user(r) for r in requests]


@app.put("/api/admin/room-requests/{student_id}/approve")
def approve_room_request(student_id: str, body: Optional[ApproveAllocationRequest] = None,
                         _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    student = find_student(db, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    if student.get("room_allocation_status") != "pending":
        raise HTTPException(status_code=400, detail="No pending request found")

    sid = str(student["_id"])
    room_number = body.room_number if body else None
    if room_number:
        room = db.room.find_one({"room_number": room_number, "room_type": student.get("room_type")})
        if not room:
            raise HTTPException(status_code=404, detail="Room not found or type mismatch")
        if room.get("current_occupancy", 0) >= room["capacity"]:
            raise HTTPException(status_code=400, detail="Room is full")
        claimed = claim_seat(db, room, sid)
        if not claimed:
            raise HTTPException(status_code=400, detail="Room is full")
    else:
        claimed = None
        candidates = db.room.find({"room_type": student.get("room_type"), "is_available": True}).sort("room_number", 1)
        for room in candidates:
            if room.get("current_occupancy", 0) >= room["capacity"]:
                continue
            claimed = claim_seat(db, room, sid)
            if claimed:
                break
        if not claimed:
            raise HTTPException(status_code=400, detail="No available room found")

    res = db.user.update_one(
        {"_id": student["_id"], "room_allocation_status": "pending"},
        {"$set": {"room_allocation_status": "approved", "room_number": claimed["room_number"], "updated_at": _now()}},
    )
    if res.matched_count == 0:
        release_seat(db, claimed["_id"], sid)
        raise HTTPException(status_code=400, detail="No pending request found")

    logger.info("Allocated room %s to student %s", claimed["room_number"], sid)
    return {
        "message": "Room allocation approved",
        "student": {"name": student.get("name"), "room_number": claimed["room_number"], "room_type": student.get("room_type")},
        "room": serialize(claimed),
    }


@app.put("/api/admin/room-requests/{student_id}/reject")
def reject_room_request(student_id: str, _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    student = find_student(db, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    res = db.user.update_one(
        {"_id": student["_id"], "room_allocation_status": "pending"},
        {"$set": {"room_allocation_status": "rejected", "room_type": None, "updated_at": _now()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=400, detail="No pending request found")
    logger.info("Rejected room request of student %s", student_id)
    return {"message": "Room allocation request rejected", "student": {"name": student.get("name"), "status": "rejected"}}


@app.get("/api/admin/students")
def admin_students(_: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    return [public_user(s) for s in get_documents(db, "user", {"role": "student"}, sort=[("name", 1)])]


@app.get("/api/admin/reports")
def admin_reports(_: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    reports = get_documents(db, "financialreport", sort=[("generated_at", -1), ("_id", -1)])
    return populate_users(db, reports, "created_by", "created_by_user")

# ---------------------------------------------------------------------------------
# Accountant: financial reports
# ---------------------------------------------------------------------------------
def summarize_fees(fees: List[dict]) -> dict:
    paid = [f for f in fees if f.get("status") == "paid"]
    pending = [f for f in fees if f.get("status") == "pending"]
    unpaid = [f for f in fees if f.get("status") != "paid"]
    return {
        "total_revenue": sum(f.get("amount", 0) for f in paid),
        "pending_amount": sum(f.get("amount", 0) for f in pending),
        "total_fines": sum(f.get("fine", 0) for f in fees),
        "pending_fines": sum(f.get("fine", 0) for f in unpaid),
        "total_records": len(fees),
        "paid_records": len(paid),
        "pending_records": len(pending),
        "overdue_records": len([f for f in fees if f.get("status") == "overdue"]),
    }


@app.get("/api/accountant/reports")
def financial_report(_: AuthUser = Depends(require_roles(["accountant"])), db: Database = Depends(get_db)):
    fees = get_documents(db, "fee", sort=[("created_at", -1), ("_id", -1)])
    report = summarize_fees(fees)
    report["generated_at"] = _now()
    report["fees"] = populate_users(db, fees, "student_id", "student")
    return report


@app.post("/api/accountant/reports/send")
def send_financial_report(user: AuthUser = Depends(require_roles(["accountant"])), db: Database = Depends(get_db)):
    fees = get_documents(db, "fee")
    snapshot = FinancialReport(**summarize_fees(fees), generated_at=_now(), created_by=user.id)
    rid = create_document(db, "financialreport", snapshot)
    logger.info("Accountant %s sent financial report %s", user.id, rid)
    return {"message": "Report sent to admin", "report": serialize(db.financialreport.find_one({"_id": ObjectId(rid)}))}


@app.get("/api/accountant/students")
def accountant_students(_: AuthUser = Depends(require_roles(["accountant"])), db: Database = Depends(get_db)):
    students = db.user.find({"role": "student"}, {"name": 1, "email": 1, "student_number": 1, "room_number": 1, "room_type": 1}).sort("name", 1)
    return [serialize(s) for s in students]

# ---------------------------------------------------------------------------------
# Fees & fines
# ---------------------------------------------------------------------------------
@app.get("/api/fees")
def list_fees(user: AuthUser = Depends(require_roles(["student", "accountant", "admin"])), db: Database = Depends(get_db)):
    if user.role == "student":
        return [serialize(f) for f in get_documents(db, "fee", {"student_id": user.id}, sort=[("created_at", -1), ("_id", -1)])]
    fees = get_documents(db, "fee", sort=[("created_at", -1), ("_id", -1)])
    return populate_users(db, fees, "student_id", "student")


@app.get("/api/fees/status")
def fee_status(user: AuthUser = Depends(require_roles(["student"])), db: Database = Depends(get_db)):
    fees = get_documents(db, "fee", {"student_id": user.id}, sort=[("created_at", -1), ("_id", -1)])
    return {
        "paid": len([f for f in fees if f.get("status") == "paid"]),
        "pending": len([f for f in fees if f.get("status") == "pending"]),
        "overdue": len([f for f in fees if f.get("status") == "overdue"]),
        "total_fine": sum(f.get("fine", 0) for f in fees),
        "fees": [serialize(f) for f in fees],
    }


@app.get("/api/fees/pending-fines")
def pending_fines(_: AuthUser = Depends(require_roles(["accountant"])), db: Database = Depends(get_db)):
    fees = get_documents(db, "fee", {"fine": {"$gt": 0}, "status": {"$ne": "paid"}}, sort=[("created_at", -1), ("_id", -1)])
    return {
        "fees": populate_users(db, fees, "student_id", "student"),
        "total_pending_fine": sum(f.get("fine", 0) for f in fees),
    }


@app.post("/api/fees", status_code=201)
def create_fee(body: FeeCreateRequest, _: AuthUser = Depends(require_roles(["accountant", "admin"])), db: Database = Depends(get_db)):
    student = find_student(db, body.student_id)
    if not student:
        raise HTTPException(status_code=400, detail="Invalid student ID")

    amount = body.amount if body.amount is not None else body.room_charge + body.mess_charge + body.fine
    fee = Fee(
        student_id=str(student["_id"]),
        student_name=student["name"],
        student_email=student["email"],
        amount=amount,
        room_charge=body.room_charge,
        mess_charge=body.mess_charge,
        fine=body.fine,
        due_date=datetime.combine(body.due_date, time.min, tzinfo=timezone.utc),
    )
    fid = create_document(db, "fee", fee)
    return serialize(db.fee.find_one({"_id": ObjectId(fid)}))


def _unchanged(fee: dict) -> dict:
    """Filter matching the fee only while it is unpaid and still as it was read."""
    return {
        "_id": fee["_id"],
        "status": {"$ne": "paid"},
        "amount": fee.get("amount", 0),
        "fine": fee.get("fine", 0),
        "remarks": fee.get("remarks", ""),
    }


def _append_remark(remarks: str, note: str) -> str:
    return f"{remarks} | {note}" if remarks else note


def record_payment(db: Database, fee: dict, payment_method: Optional[str], remarks: Optional[str]) -> Optional[dict]:
    update = {"status": "paid", "paid_date": _now(), "payment_method": payment_method or "", "updated_at": _now()}
    if remarks:
        update["remarks"] = _append_remark(fee.get("remarks", ""), remarks)
    return db.fee.find_one_and_update(_unchanged(fee), {"$set": update}, return_document=ReturnDocument.AFTER)


def apply_fine(db: Database, fee: dict, fine: float, reason: Optional[str]) -> Optional[dict]:
    """Add a fine to a fee as read; returns None if the fee was paid or changed meanwhile."""
    update = {"$inc": {"fine": fine, "amount": fine}, "$set": {"updated_at": _now()}}
    if reason:
        update["$set"]["remarks"] = _append_remark(fee.get("remarks", ""), f"Fine added: {reason}")
    return db.fee.find_one_and_update(_unchanged(fee), update, return_document=ReturnDocument.AFTER)


def _write_conflict(db: Database, fee: dict, paid_message: str):
    current = db.fee.find_one({"_id": fee["_id"]})
    if not current:
        raise HTTPException(status_code=404, detail="Fee record not found")
    if current.get("status") == "paid":
        raise HTTPException(status_code=400, detail=paid_message)
    raise HTTPException(status_code=409, detail="Fee record changed, please retry")


@app.put("/api/fees/{fee_id}/pay")
def pay_fee(fee_id: str, body: PayRequest, _: AuthUser = Depends(require_roles(["accountant", "admin"])), db: Database = Depends(get_db)):
    fee = db.fee.find_one({"_id": to_object_id(fee_id)})
    if not fee:
        raise HTTPException(status_code=404, detail="Fee record not found")
    if fee.get("status") == "paid":
        raise HTTPException(status_code=400, detail="Fee record is already paid")

    updated = record_payment(db, fee, body.payment_method, body.remarks)
    if not updated:
        _write_conflict(db, fee, "Fee record is already paid")
    logger.info("Fee %s marked paid", fee_id)
    return serialize(updated)


@app.put("/api/fees/{fee_id}/add-fine")
def add_fine(fee_id: str, body: AddFineRequest, _: AuthUser = Depends(require_roles(["accountant", "admin"])), db: Database = Depends(get_db)):
    fee = db.fee.find_one({"_id": to_object_id(fee_id)})
    if not fee:
        raise HTTPException(status_code=404, detail="Fee record not found")
    if fee.get("status") == "paid":
        raise HTTPException(status_code=400, detail="Cannot add fine to a paid fee record")

    new_amount = fee.get("amount", 0) + body.fine
    if body.amount is not None and abs(body.amount - new_amount) > 1e-6:
        raise HTTPException(status_code=400, detail="Amount must equal the current amount plus the fine")

    updated = apply_fine(db, fee, body.fine, body.reason)
    if not updated:
        _write_conflict(db, fee, "Cannot add fine to a paid fee record")
    logger.info("Added fine %s to fee %s", body.fine, fee_id)
    return serialize(updated)

# ---------------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------------
@app.post("/api/complaints", status_code=201)
def create_complaint(body: ComplaintRequest, user: AuthUser = Depends(require_roles(["student"])), db: Database = Depends(get_db)):
    title = body.title.strip()
    description = body.description.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    if not description:
        raise HTTPException(status_code=400, detail="Description is required")
    complaint = Complaint(student_id=user.id, student_name=user.name, category=body.category, title=title, description=description)
    cid = create_document(db, "complaint", complaint)
    return serialize(db.complaint.find_one({"_id": ObjectId(cid)}))


@app.get("/api/complaints")
def list_complaints(user: AuthUser = Depends(require_roles(["student", "admin"])), db: Database = Depends(get_db)):
    if user.role == "student":
        return [serialize(c) for c in get_documents(db, "complaint", {"student_id": user.id}, sort=[("created_at", -1), ("_id", -1)])]
    complaints = get_documents(db, "complaint", sort=[("created_at", -1), ("_id", -1)])
    return populate_users(db, complaints, "student_id", "student")


@app.get("/api/complaints/{complaint_id}")
def get_complaint(complaint_id: str, user: AuthUser = Depends(require_roles(["student", "admin"])), db: Database = Depends(get_db)):
    complaint = db.complaint.find_one({"_id": to_object_id(complaint_id)})
    if not complaint:
        raise HTTPException(status_code=404, detail="Complaint not found")
    if user.role == "student" and complaint.get("student_id") != user.id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return populate_users(db, [complaint], "student_id", "student")[0]


@app.put("/api/complaints/{complaint_id}/resolve")
def resolve_complaint(complaint_id: str, body: ResolveComplaintRequest, _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    response_text = body.admin_response.strip()
    if not response_text:
        raise HTTPException(status_code=400, detail="Response is required")
    updated = db.complaint.find_one_and_update(
        {"_id": to_object_id(complaint_id)},
        {"$set": {"status": "resolved", "admin_response": response_text, "resolved_at": _now(), "updated_at": _now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Complaint not found")
    return serialize(updated)


@app.delete("/api/complaints/{complaint_id}")
def delete_complaint(complaint_id: str, _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    res = db.complaint.delete_one({"_id": to_object_id(complaint_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Complaint not found")
    return {"message": "Complaint deleted successfully"}

# ---------------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------------
def visible_to(user: AuthUser) -> dict:
    if user.role == "admin":
        return {}
    return {"recipient": {"$in": ["all", user.role]}}


def has_read(doc: dict, user_id: str) -> bool:
    return any(r.get("user_id") == user_id for r in doc.get("read_by", []))


def with_read_state(doc: dict, user_id: str) -> dict:
    item = serialize(doc)
    item["is_read"] = has_read(doc, user_id)
    return item


def notify(db: Database, title: str, message: str, recipient: str, creator: AuthUser) -> str:
    notification = Notification(title=title, message=message, recipient=recipient, created_by=creator.id)
    data = notification.model_dump()
    data["created_by_name"] = creator.name
    return create_document(db, "notification", data)


@app.post("/api/notifications", status_code=201)
def create_notification(body: NotificationRequest, user: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    title, message = body.title.strip(), body.message.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    nid = notify(db, title, message, body.recipient, user)
    return with_read_state(db.notification.find_one({"_id": ObjectId(nid)}), user.id)


@app.get("/api/notifications")
def list_notifications(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    notifications = get_documents(db, "notification", visible_to(user), sort=[("created_at", -1), ("_id", -1)])
    return [with_read_state(n, user.id) for n in notifications]


@app.get("/api/notifications/unread-count")
def unread_count(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    notifications = get_documents(db, "notification", visible_to(user))
    return {"count": len([n for n in notifications if not has_read(n, user.id)])}


@app.put("/api/notifications/read-all")
def mark_all_read(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    receipt = ReadReceipt(user_id=user.id, read_at=_now()).model_dump()
    res = db.notification.update_many(
        {**visible_to(user), "read_by.user_id": {"$ne": user.id}},
        {"$push": {"read_by": receipt}},
    )
    return {"updated": res.modified_count}


@app.get("/api/notifications/{notification_id}")
def get_notification(notification_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    notification = db.notification.find_one({"_id": to_object_id(notification_id), **visible_to(user)})
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return with_read_state(notification, user.id)


@app.put("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    nid = to_object_id(notification_id)
    if not db.notification.find_one({"_id": nid, **visible_to(user)}):
        raise HTTPException(status_code=404, detail="Notification not found")
    receipt = ReadReceipt(user_id=user.id, read_at=_now()).model_dump()
    # the $ne guard keeps a single receipt per user
    db.notification.update_one({"_id": nid, "read_by.user_id": {"$ne": user.id}}, {"$push": {"read_by": receipt}})
    return with_read_state(db.notification.find_one({"_id": nid}), user.id)


@app.delete("/api/notifications/{notification_id}")
def delete_notification(notification_id: str, _: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    res = db.notification.delete_one({"_id": to_object_id(notification_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"message": "Notification deleted successfully"}

# ---------------------------------------------------------------------------------
# Mess menu & timings
# ---------------------------------------------------------------------------------
def _week_order(menu: dict) -> int:
    return WEEKDAYS.index(menu["day"]) if menu.get("day") in WEEKDAYS else len(WEEKDAYS)


def _meal(meal: Optional[Meal], name: str) -> Meal:
    if meal is None:
        return Meal(items=[], timing=DEFAULT_TIMINGS[name])
    if meal.timing is None:
        return Meal(items=meal.items, timing=DEFAULT_TIMINGS[name])
    return meal


@app.get("/api/mess/menu")
def get_mess_menu(response: Response, _: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    response.headers["Cache-Control"] = "no-store"
    menus = sorted(get_documents(db, "messmenu"), key=_week_order)
    return [serialize(m) for m in menus]


@app.get("/api/mess/timings")
def get_mess_timings(response: Response, _: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    response.headers["Cache-Control"] = "no-store"
    menus = sorted(get_documents(db, "messmenu"), key=_week_order)
    if not menus:
        return DEFAULT_TIMINGS
    first = menus[0]
    return {meal: (first.get(meal) or {}).get("timing") or DEFAULT_TIMINGS[meal] for meal in DEFAULT_TIMINGS}


@app.put("/api/mess/menu")
def update_mess_menu(body: MessMenuRequest, user: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    if body.day not in WEEKDAYS:
        raise HTTPException(status_code=400, detail="Invalid day")

    menu = MessMenu(
        day=body.day,
        breakfast=_meal(body.breakfast, "breakfast"),
        lunch=_meal(body.lunch, "lunch"),
        dinner=_meal(body.dinner, "dinner"),
        image=body.image or "",
        updated_by=user.id,
        updated_at=_now(),
    )
    saved = db.messmenu.find_one_and_update(
        {"day": body.day},
        {"$set": menu.model_dump()},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    notify(db, "Mess Menu Updated",
           f"Mess menu for {body.day} has been updated. Please check the latest items in the mess menu section.",
           "student", user)
    logger.info("Mess menu for %s updated by %s", body.day, user.id)
    return serialize(saved)


@app.put("/api/mess/timings")
def update_mess_timings(body: MessTimingsRequest, user: AuthUser = Depends(require_roles(["admin"])), db: Database = Depends(get_db)):
    timings = body.model_dump()
    for day in WEEKDAYS:
        db.messmenu.update_one(
            {"day": day},
            {
                "$set": {
                    "breakfast.timing": timings["breakfast"],
                    "lunch.timing": timings["lunch"],
                    "dinner.timing": timings["dinner"],
                    "updated_by": user.id,
                    "updated_at": _now(),
                },
                "$setOnInsert": {"breakfast.items": [], "lunch.items": [], "dinner.items": [], "image": ""},
            },
            upsert=True,
        )
    notify(db, "Mess Timings Updated",
           "Mess timings have been updated. Please check the latest timings in the mess section.",
           "student", user)
    updates = sorted(get_documents(db, "messmenu"), key=_week_order)
    return {"message": "Mess timings updated successfully", "updates": [serialize(m) for m in updates]}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
