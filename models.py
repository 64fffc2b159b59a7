from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

# Stored records use camelCase keys ("hostelId", "roomNumber"); models accept
# either spelling and keep any extra fields the client sends.


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


def dump(model: BaseModel, partial: bool = False) -> dict:
    """Converts a request model into a store record (or a partial update)."""
    if partial:
        return model.model_dump(mode="json", by_alias=True, exclude_unset=True)
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


PaymentStatus = Literal["pending", "paid", "approved", "overdue"]
Role = Literal["master_admin", "admin", "receptionist", "staff", "tenant"]

# --- 1. Hostel Models ---

class HostelCreate(Record):
    name: str = Field(min_length=1)
    address: Optional[str] = None
    status: Literal["active", "inactive"] = "active"
    plan_type: str = "free_trial"
    email_domain: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    admin_name: Optional[str] = None
    admin_email: Optional[EmailStr] = None
    admin_phone: Optional[str] = None

class HostelUpdate(Record):
    name: Optional[str] = None
    address: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None
    plan_type: Optional[str] = None
    email_domain: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    admin_name: Optional[str] = None
    admin_email: Optional[EmailStr] = None
    admin_phone: Optional[str] = None

# --- 2. User Models ---

class UserCreate(Record):
    name: str = Field(min_length=1)
    email: EmailStr
    role: Role
    hostel_id: Optional[str] = None
    phone: Optional[str] = None
    # Hashed before it reaches the store; generated when omitted.
    password: Optional[str] = None
    status: Literal["active", "inactive"] = "active"

class UserUpdate(Record):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None

# --- 3. Tenant Models ---

class TenantCreate(Record):
    hostel_id: str
    name: str = Field(min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    room_number: Optional[str] = None
    room_id: Optional[str] = None
    rent: Optional[float] = Field(default=None, ge=0)
    deposit: Optional[float] = Field(default=None, ge=0)
    joining_date: Optional[str] = None
    aadhar_number: Optional[str] = None
    pending_dues: float = 0
    status: str = "active"

class TenantUpdate(Record):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    room_number: Optional[str] = None
    room_id: Optional[str] = None
    rent: Optional[float] = Field(default=None, ge=0)
    deposit: Optional[float] = Field(default=None, ge=0)
    joining_date: Optional[str] = None
    aadhar_number: Optional[str] = None
    pending_dues: Optional[float] = None
    status: Optional[str] = None

# --- 4. Room Models ---

class RoomCreate(Record):
    hostel_id: str
    room_number: str = Field(min_length=1)
    type: Optional[str] = None
    capacity: int = Field(default=1, ge=1)
    rent: float = Field(default=0, ge=0)
    occupancy: int = Field(default=0, ge=0)
    floor: Optional[int] = None
    status: str = "available"
    amenities: list[str] = []

class RoomUpdate(Record):
    room_number: Optional[str] = None
    type: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=1)
    rent: Optional[float] = Field(default=None, ge=0)
    occupancy: Optional[int] = Field(default=None, ge=0)
    floor: Optional[int] = None
    status: Optional[str] = None
    amenities: Optional[list[str]] = None

# --- 5. Payment Models ---

class PaymentCreate(Record):
    hostel_id: str
    tenant_id: str
    tenant_name: Optional[str] = None
    amount: float = Field(ge=0)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = None
    status: PaymentStatus = "pending"
    payment_date: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None

class PaymentUpdate(Record):
    amount: Optional[float] = Field(default=None, ge=0)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = None
    status: Optional[PaymentStatus] = None
    payment_date: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None

# --- 6. Complaint Models ---

class ComplaintCreate(Record):
    hostel_id: str
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    priority: str = "medium"
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    room: Optional[str] = None
    # Upload paths and metadata, stored as given.
    attachments: list = []

class ComplaintUpdate(Record):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assigned_to: Optional[str] = None
    admin_notes: Optional[str] = None
    resolution_notes: Optional[str] = None
    reopened_by: Optional[str] = None

class CommentCreate(BaseModel):
    message: str = Field(min_length=1)

# --- 7. Staff, Expense and Notice Models ---

class StaffCreate(Record):
    hostel_id: str
    name: str = Field(min_length=1)
    role: str = "staff"
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    salary: Optional[float] = Field(default=None, ge=0)
    shift: Optional[str] = None
    joining_date: Optional[str] = None
    status: str = "active"

class StaffUpdate(Record):
    name: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    salary: Optional[float] = Field(default=None, ge=0)
    shift: Optional[str] = None
    status: Optional[str] = None

class ExpenseCreate(Record):
    hostel_id: str
    title: str = Field(min_length=1)
    amount: float = Field(ge=0)
    category: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None

class ExpenseUpdate(Record):
    title: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None

class NoticeCreate(Record):
    hostel_id: str
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    priority: str = "normal"
    status: str = "active"

class NoticeUpdate(Record):
    title: Optional[str] = None
    message: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None

# --- 8. Request and Ticket Models ---

class HostelRequestCreate(Record):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    hostel_name: str = Field(min_length=1)
    address: Optional[str] = None
    plan_type: str = "free_trial"
    message: Optional[str] = None

class HostelRequestUpdate(Record):
    status: Optional[Literal["pending", "approved", "rejected"]] = None
    notes: Optional[str] = None
    is_read: Optional[bool] = None

class CheckoutRequestCreate(Record):
    hostel_id: str
    tenant_id: str
    tenant_name: Optional[str] = None
    checkout_date: Optional[str] = None
    reason: Optional[str] = None
    status: str = "pending"

class CheckoutRequestUpdate(Record):
    checkout_date: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None

class HostelSettingsCreate(Record):
    hostel_id: str

class HostelSettingsUpdate(Record):
    pass

class SupportTicketCreate(Record):
    subject: str = Field(min_length=1)
    message: Optional[str] = None
    hostel_id: Optional[str] = None
    priority: str = "normal"
    status: str = "open"

class SupportTicketUpdate(Record):
    subject: Optional[str] = None
    message: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None

# --- 9. Auth and Notification Models ---

class LoginRequest(BaseModel):
    email: str
    password: str

class RedeemRequest(BaseModel):
    token: str

class DecisionRequest(BaseModel):
    notes: Optional[str] = None

class PushSubscriptionIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    endpoint: str
    keys: dict = {}
