from datetime import date, datetime
from decimal import Decimal
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from ..constants import UserRole

T = TypeVar("T")

RoleName = Literal["owner", "tenant", "serviceProvider"]
ScheduleSlot = Literal["morning", "afternoon", "evening"]
Priority = Literal["low", "medium", "high", "emergency"]
ReminderKind = Literal["initial", "reminder", "overdue"]

PHONE_PATTERN = r"^\+?[\d\s-]{10,}$"
APARTMENT_NUMBER_PATTERN = r"^[A-Za-z0-9\- ]{1,20}$"


class ListResponse(BaseModel, Generic[T]):
    items: List[T]
    count: int
    message: str


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    role: RoleName
    first_name: str = Field(min_length=2, max_length=50)
    last_name: str = Field(min_length=2, max_length=50)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    company_name: Optional[str] = None
    service_types: Optional[List[str]] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def provider_fields(self) -> "UserCreate":
        if self.role == UserRole.SERVICE_PROVIDER:
            if not (self.company_name or "").strip():
                raise ValueError("company_name is required for service providers")
            if not self.service_types:
                raise ValueError("service_types is required for service providers")
        return self


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: EmailStr
    role: RoleName
    first_name: str
    last_name: str
    phone: Optional[str] = None
    is_active: bool
    created_at: datetime
    last_login: Optional[datetime] = None
    current_apartment_id: Optional[int] = None
    lease_start: Optional[date] = None
    lease_end: Optional[date] = None
    company_name: Optional[str] = None
    service_types: Optional[List[str]] = None
    maintenance_request_ids: List[int] = []
    owned_apartment_ids: Optional[List[int]] = None


class UserSelfUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    company_name: Optional[str] = Field(default=None, min_length=1)
    service_types: Optional[List[str]] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: RoleName
    expires_in: int


class ApartmentCreate(BaseModel):
    apartment_number: str = Field(pattern=APARTMENT_NUMBER_PATTERN)
    location: str = Field(min_length=5, max_length=200)
    rent_amount: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    rent_due_day: int = Field(strict=True, ge=1, le=31)
    amenities: Optional[List[str]] = None
    square_footage: Optional[float] = Field(default=None, ge=0)
    bedrooms: Optional[float] = Field(default=None, ge=0)
    bathrooms: Optional[float] = Field(default=None, ge=0)


class ApartmentUpdate(BaseModel):
    apartment_number: Optional[str] = Field(default=None, pattern=APARTMENT_NUMBER_PATTERN)
    location: Optional[str] = Field(default=None, min_length=5, max_length=200)
    rent_amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    rent_due_day: Optional[int] = Field(default=None, strict=True, ge=1, le=31)
    status: Optional[Literal["vacant", "occupied", "maintenance"]] = None
    amenities: Optional[List[str]] = None
    square_footage: Optional[float] = Field(default=None, ge=0)
    bedrooms: Optional[float] = Field(default=None, ge=0)
    bathrooms: Optional[float] = Field(default=None, ge=0)


class ApartmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    apartment_number: str
    location: str
    owner_id: int
    current_tenant_id: Optional[int] = None
    rent_amount: Decimal
    rent_due_day: int
    status: str
    amenities: Optional[List[str]] = None
    square_footage: Optional[float] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    last_maintenance_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    maintenance_history: List[int] = []

    @field_validator("maintenance_history", mode="before")
    @classmethod
    def request_ids(cls, value):
        return [getattr(request, "id", request) for request in value or []]


class AssignTenantRequest(BaseModel):
    tenant_id: int
    lease_start: Optional[date] = None
    lease_end: Optional[date] = None

    @model_validator(mode="after")
    def lease_order(self) -> "AssignTenantRequest":
        if self.lease_start and self.lease_end and self.lease_end < self.lease_start:
            raise ValueError("lease_end cannot precede lease_start")
        return self


class MaintenancePhotoRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    path: str
    original_filename: str
    content_type: Optional[str] = None
    file_size: Optional[int] = None
    uploaded_by_user_id: Optional[int] = None
    uploaded_at: datetime


class MaintenanceMessageCreate(BaseModel):
    body: str = Field(min_length=1, max_length=2000)


class MaintenanceMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    sender_id: int
    body: str
    created_at: datetime
    read_by: List[int] = []


class MaintenanceNoteCreate(BaseModel):
    body: str = Field(min_length=1, max_length=2000)


class MaintenanceNoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    author_id: int
    body: str
    created_at: datetime


class MaintenanceStatusUpdate(BaseModel):
    # Left as a plain string; unknown targets are rejected by the state machine.
    status: str
    service_provider_id: Optional[int] = None


class ScheduleProposal(BaseModel):
    preferred_date: date
    preferred_slot: ScheduleSlot


class ScheduleConfirmation(BaseModel):
    confirmed_date: date
    confirmed_slot: ScheduleSlot


class RatingCreate(BaseModel):
    rating: int = Field(strict=True, ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)


class MaintenanceRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    apartment_id: Optional[int] = None
    tenant_id: int
    owner_id: int
    service_provider_id: Optional[int] = None
    request_type: str = Field(serialization_alias="type")
    description: str
    priority: str
    status: str
    start_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    preferred_date: Optional[date] = None
    preferred_slot: Optional[str] = None
    confirmed_date: Optional[date] = None
    confirmed_slot: Optional[str] = None
    rating: Optional[int] = None
    rating_comment: Optional[str] = None
    rated_at: Optional[datetime] = None
    version: int
    photos: List[MaintenancePhotoRead] = []
    completion_photos: List[MaintenancePhotoRead] = []
    messages: List[MaintenanceMessageRead] = []
    notes: List[MaintenanceNoteRead] = []
    created_at: datetime
    updated_at: datetime


class RentReminderCreate(BaseModel):
    reminder_type: Optional[ReminderKind] = None
    channel: str = Field(default="email", max_length=20)


class RentReminderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: int
    reminder_type: ReminderKind
    channel: str
    sent_by_user_id: Optional[int] = None
    sent_at: datetime


class RentPaymentCreate(BaseModel):
    apartment_id: int
    due_date: datetime
    tenant_id: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=1000)


class RentPaymentMarkPaid(BaseModel):
    payment_method: Optional[str] = Field(default=None, max_length=50)
    reference_number: Optional[str] = Field(default=None, max_length=100)
    paid_date: Optional[datetime] = None


class RentPaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    apartment_id: Optional[int] = None
    tenant_id: int
    amount: Decimal
    due_date: datetime
    status: str
    paid_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    reminders: List[RentReminderRead] = []
    created_at: datetime


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    title: str
    message: str
    level: str
    category: Optional[str] = None
    link_url: Optional[str] = None
    created_at: datetime
    read_at: Optional[datetime] = None
