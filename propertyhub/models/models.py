from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..constants import (
    SERVICE_TYPES,
    ApartmentStatus,
    MaintenanceStatus,
    PaymentStatus,
    PhotoKind,
    UserRole,
)
from ..core.errors import ValidationError
from ..database import Base


def utcnow():
    # Stored timestamps are naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


user_maintenance_requests = Table(
    "user_maintenance_requests",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("request_id", Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), primary_key=True),
    Column("linked_at", DateTime, default=utcnow, nullable=False),
)

apartment_maintenance_history = Table(
    "apartment_maintenance_history",
    Base.metadata,
    Column("apartment_id", Integer, ForeignKey("apartments.id", ondelete="CASCADE"), primary_key=True),
    Column("request_id", Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), primary_key=True),
    Column("linked_at", DateTime, default=utcnow, nullable=False),
)


class User(Base):
    """Common account fields; ``role`` picks the concrete class."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    notifications = orm_relationship(
        "Notification",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="Notification.created_at",
    )
    maintenance_requests = orm_relationship(
        "MaintenanceRequest",
        secondary=user_maintenance_requests,
        viewonly=True,
        order_by="MaintenanceRequest.created_at",
    )

    __mapper_args__ = {"polymorphic_on": role}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def maintenance_request_ids(self) -> list[int]:
        return [request.id for request in self.maintenance_requests]

    @property
    def owned_apartment_ids(self) -> Optional[list[int]]:
        return None

    def has_any_role(self, *role_names: str) -> bool:
        return self.role in set(role_names)


class Owner(User):
    __mapper_args__ = {"polymorphic_identity": UserRole.OWNER}

    owned_apartments = orm_relationship(
        "Apartment",
        back_populates="owner",
        foreign_keys="Apartment.owner_id",
        order_by="Apartment.apartment_number",
    )

    @property
    def owned_apartment_ids(self) -> list[int]:
        return [apartment.id for apartment in self.owned_apartments]


class Tenant(User):
    __mapper_args__ = {"polymorphic_identity": UserRole.TENANT}

    # Unique: a tenant occupies at most one apartment, and the constraint
    # serialises concurrent assignments of the same tenant.
    current_apartment_id = Column(
        Integer,
        ForeignKey("apartments.id", use_alter=True, name="fk_users_current_apartment_id"),
        nullable=True,
        unique=True,
    )
    lease_start = Column(Date, nullable=True)
    lease_end = Column(Date, nullable=True)

    current_apartment = orm_relationship("Apartment", foreign_keys=[current_apartment_id], viewonly=True)


def normalize_service_types(service_types) -> list[str]:
    normalized = []
    invalid = []
    for value in service_types or []:
        cleaned = (value or "").strip().lower()
        if cleaned not in SERVICE_TYPES:
            invalid.append(value)
        elif cleaned not in normalized:
            normalized.append(cleaned)
    if invalid:
        raise ValidationError({"service_types": f"Invalid service type(s): {', '.join(map(str, invalid))}"})
    if not normalized:
        raise ValidationError({"service_types": "At least one service type is required"})
    return normalized


class ServiceProvider(User):
    __mapper_args__ = {"polymorphic_identity": UserRole.SERVICE_PROVIDER}

    company_name = Column(String, nullable=True)
    service_types = Column(JSON, nullable=True)

    def __init__(self, *, company_name: str, service_types: list[str], **kwargs) -> None:
        if not company_name or not company_name.strip():
            raise ValidationError({"company_name": "Company name is required for service providers"})
        super().__init__(
            company_name=company_name.strip(),
            service_types=normalize_service_types(service_types),
            **kwargs,
        )


class Apartment(Base):
    __tablename__ = "apartments"
    __table_args__ = (UniqueConstraint("owner_id", "apartment_number", name="uq_apartments_owner_number"),)

    id = Column(Integer, primary_key=True, index=True)
    apartment_number = Column(String, nullable=False)
    location = Column(String, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    current_tenant_id = Column(Integer, ForeignKey("users.id"), nullable=True, unique=True)
    rent_amount = Column(Numeric(10, 2), nullable=False)
    rent_due_day = Column(Integer, nullable=False)
    # Derived from current_tenant_id; only the consistency engine writes it.
    status = Column(String, nullable=False, default=ApartmentStatus.VACANT, index=True)
    amenities = Column(JSON, nullable=True)
    square_footage = Column(Float, nullable=True)
    bedrooms = Column(Float, nullable=True)
    bathrooms = Column(Float, nullable=True)
    last_maintenance_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    owner = orm_relationship("Owner", back_populates="owned_apartments", foreign_keys=[owner_id])
    current_tenant = orm_relationship("Tenant", foreign_keys=[current_tenant_id], viewonly=True)
    maintenance_history = orm_relationship(
        "MaintenanceRequest",
        secondary=apartment_maintenance_history,
        viewonly=True,
        order_by="MaintenanceRequest.created_at",
    )

    @property
    def is_occupied(self) -> bool:
        return self.current_tenant_id is not None


class MaintenanceRequest(Base):
    __tablename__ = "maintenance_requests"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="SET NULL"), nullable=True, index=True)
    tenant_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    service_provider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    request_type = Column("type", String, nullable=False)
    description = Column(Text, nullable=False)
    priority = Column(String, nullable=False, default="medium")
    status = Column(String, nullable=False, default=MaintenanceStatus.PENDING, index=True)
    start_date = Column(DateTime, nullable=True)
    completion_date = Column(DateTime, nullable=True)
    preferred_date = Column(Date, nullable=True)
    preferred_slot = Column(String, nullable=True)
    confirmed_date = Column(Date, nullable=True)
    confirmed_slot = Column(String, nullable=True)
    rating = Column(Integer, nullable=True)
    rating_comment = Column(Text, nullable=True)
    rated_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    apartment = orm_relationship("Apartment", foreign_keys=[apartment_id])
    tenant = orm_relationship("Tenant", foreign_keys=[tenant_id])
    owner = orm_relationship("Owner", foreign_keys=[owner_id])
    service_provider = orm_relationship("ServiceProvider", foreign_keys=[service_provider_id])
    attachments = orm_relationship(
        "MaintenancePhoto",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="MaintenancePhoto.id",
    )
    messages = orm_relationship(
        "MaintenanceMessage",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="MaintenanceMessage.id",
    )
    notes = orm_relationship(
        "MaintenanceNote",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="MaintenanceNote.id",
    )

    @property
    def photos(self) -> list["MaintenancePhoto"]:
        return [item for item in self.attachments if item.kind == PhotoKind.REQUEST]

    @property
    def completion_photos(self) -> list["MaintenancePhoto"]:
        return [item for item in self.attachments if item.kind == PhotoKind.COMPLETION]

    @property
    def participant_ids(self) -> list[int]:
        ids = [self.tenant_id, self.owner_id]
        if self.service_provider_id:
            ids.append(self.service_provider_id)
        return ids

    @property
    def is_terminal(self) -> bool:
        return self.status in MaintenanceStatus.TERMINAL


class MaintenancePhoto(Base):
    __tablename__ = "maintenance_photos"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String, nullable=False, default=PhotoKind.REQUEST)
    path = Column(String, nullable=False)
    original_filename = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    file_size = Column(Integer, nullable=True)
    uploaded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)

    request = orm_relationship("MaintenanceRequest", back_populates="attachments")
    uploader = orm_relationship("User")


class MaintenanceMessage(Base):
    __tablename__ = "maintenance_messages"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    request = orm_relationship("MaintenanceRequest", back_populates="messages")
    sender = orm_relationship("User")
    reads = orm_relationship("MessageReadReceipt", back_populates="message", cascade="all, delete-orphan")

    @property
    def read_by(self) -> list[int]:
        return [receipt.user_id for receipt in self.reads]


class MessageReadReceipt(Base):
    __tablename__ = "maintenance_message_reads"
    __table_args__ = (UniqueConstraint("message_id", "user_id", name="uq_message_reads_message_user"),)

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("maintenance_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    read_at = Column(DateTime, default=utcnow, nullable=False)

    message = orm_relationship("MaintenanceMessage", back_populates="reads")


class MaintenanceNote(Base):
    __tablename__ = "maintenance_notes"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    request = orm_relationship("MaintenanceRequest", back_populates="notes")
    author = orm_relationship("User")


class RentPayment(Base):
    __tablename__ = "rent_payments"
    __table_args__ = (Index("ix_rent_payments_due_date_status", "due_date", "status"),)

    id = Column(Integer, primary_key=True, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="SET NULL"), nullable=True, index=True)
    tenant_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    due_date = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING)
    paid_date = Column(DateTime, nullable=True)
    payment_method = Column(String, nullable=True)
    reference_number = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    apartment = orm_relationship("Apartment", foreign_keys=[apartment_id])
    tenant = orm_relationship("Tenant", foreign_keys=[tenant_id])
    reminders = orm_relationship(
        "RentReminder",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="RentReminder.id",
    )

    def has_reminder(self, reminder_type: str) -> bool:
        return any(reminder.reminder_type == reminder_type for reminder in self.reminders)


class RentReminder(Base):
    __tablename__ = "rent_reminders"
    __table_args__ = (
        Index(
            "uq_rent_reminders_once_per_type",
            "payment_id",
            "reminder_type",
            unique=True,
            sqlite_where=text("reminder_type IN ('initial', 'overdue')"),
            postgresql_where=text("reminder_type IN ('initial', 'overdue')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("rent_payments.id", ondelete="CASCADE"), nullable=False, index=True)
    reminder_type = Column(String, nullable=False)
    channel = Column(String, nullable=False, default="email")
    sent_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    sent_at = Column(DateTime, default=utcnow, nullable=False)

    payment = orm_relationship("RentPayment", back_populates="reminders")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    level = Column(String, default="info", nullable=False)
    category = Column(String, nullable=True)
    link_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    read_at = Column(DateTime, nullable=True)

    user = orm_relationship("User", back_populates="notifications")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    before = Column(Text, nullable=True)
    after = Column(Text, nullable=True)

    actor = orm_relationship("User")
