"""
Hostel Management System Schemas (MongoDB via Pydantic)

Each Pydantic model name corresponds to a collection with the lowercase name
(e.g., class User -> "user", class MessMenu -> "messmenu"). Collection models
describe the stored documents; the *Request models validate API inputs.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import date, datetime

RoomType = Literal["2-person", "3-person", "4-person"]
Role = Literal["student", "accountant", "admin"]
Recipient = Literal["all", "student", "accountant", "admin"]
Weekday = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

WEEKDAYS: List[str] = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
ROOM_CAPACITY = {"2-person": 2, "3-person": 3, "4-person": 4}

DEFAULT_TIMINGS = {
    "breakfast": {"start": "08:00", "end": "10:00"},
    "lunch": {"start": "12:00", "end": "14:00"},
    "dinner": {"start": "19:00", "end": "21:00"},
}

# ---------------------------------
# AUTH / USERS
# ---------------------------------
class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role
    student_number: Optional[str] = None
    room_number: Optional[str] = None
    room_type: Optional[RoomType] = None
    room_allocation_status: Literal["none", "pending", "approved", "rejected"] = "none"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "student"
    student_number: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# ---------------------------------
# ROOMS
# ---------------------------------
class Room(BaseModel):
    room_number: str
    room_type: RoomType
    capacity: int = Field(ge=1)
    current_occupancy: int = 0
    charge: float = Field(ge=0)
    students: List[str] = []
    is_available: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RoomCreateRequest(BaseModel):
    room_number: str = Field(..., min_length=1)
    room_type: RoomType
    charge: float = Field(ge=0)


class RoomChargesRequest(BaseModel):
    two_person: Optional[float] = Field(None, alias="2-person", ge=0)
    three_person: Optional[float] = Field(None, alias="3-person", ge=0)
    four_person: Optional[float] = Field(None, alias="4-person", ge=0)


class RoomAllocationRequest(BaseModel):
    room_type: RoomType


class ApproveAllocationRequest(BaseModel):
    room_number: Optional[str] = None


# ---------------------------------
# FEES / FINES
# ---------------------------------
class Fee(BaseModel):
    student_id: str
    student_name: str
    student_email: EmailStr
    amount: float
    room_charge: float
    mess_charge: float = 0
    fine: float = 0
    status: Literal["paid", "pending", "overdue"] = "pending"
    due_date: datetime
    paid_date: Optional[datetime] = None
    payment_method: str = ""
    remarks: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FeeCreateRequest(BaseModel):
    student_id: str
    room_charge: float = Field(ge=0)
    mess_charge: float = Field(0, ge=0)
    fine: float = Field(0, ge=0)
    amount: Optional[float] = Field(None, ge=0)
    due_date: date


class PayRequest(BaseModel):
    payment_method: Optional[str] = None
    remarks: Optional[str] = None


class AddFineRequest(BaseModel):
    fine: float = Field(..., gt=0)
    amount: Optional[float] = None
    reason: Optional[str] = None


# ---------------------------------
# COMPLAINTS
# ---------------------------------
class Complaint(BaseModel):
    student_id: str
    student_name: str
    category: Literal["mess issue", "general issue", "other"]
    title: str
    description: str
    status: Literal["pending", "resolved", "rejected"] = "pending"
    admin_response: str = ""
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ComplaintRequest(BaseModel):
    category: Literal["mess issue", "general issue", "other"]
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class ResolveComplaintRequest(BaseModel):
    admin_response: str = Field(..., min_length=1)


# ---------------------------------
# NOTIFICATIONS
# ---------------------------------
class ReadReceipt(BaseModel):
    user_id: str
    read_at: datetime


class Notification(BaseModel):
    title: str
    message: str
    recipient: Recipient = "all"
    created_by: str
    read_by: List[ReadReceipt] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NotificationRequest(BaseModel):
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    recipient: Recipient = "all"


# ---------------------------------
# MESS MENU
# ---------------------------------
class MealTiming(BaseModel):
    start: str = Field(..., min_length=1)
    end: str = Field(..., min_length=1)


class Meal(BaseModel):
    items: List[str] = []
    timing: Optional[MealTiming] = None


class MessMenu(BaseModel):
    day: Weekday
    breakfast: Meal
    lunch: Meal
    dinner: Meal
    image: str = ""
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class MessMenuRequest(BaseModel):
    day: str
    breakfast: Optional[Meal] = None
    lunch: Optional[Meal] = None
    dinner: Optional[Meal] = None
    image: Optional[str] = None


class MessTimingsRequest(BaseModel):
    breakfast: MealTiming
    lunch: MealTiming
    dinner: MealTiming


# ---------------------------------
# FINANCIAL REPORTS
# ---------------------------------
class FinancialReport(BaseModel):
    total_revenue: float = 0
    pending_amount: float = 0
    total_fines: float = 0
    pending_fines: float = 0
    total_records: int = 0
    paid_records: int = 0
    pending_records: int = 0
    overdue_records: int = 0
    generated_at: datetime
    created_by: str
