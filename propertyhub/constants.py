class UserRole:
    OWNER = "owner"
    TENANT = "tenant"
    SERVICE_PROVIDER = "serviceProvider"

    ALL = (OWNER, TENANT, SERVICE_PROVIDER)


SERVICE_TYPES = ("plumbing", "electrical", "hvac", "cleaning", "pest control", "general")


class ApartmentStatus:
    VACANT = "vacant"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"

    ALL = (VACANT, OCCUPIED, MAINTENANCE)


class MaintenanceStatus:
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (PENDING, ASSIGNED, IN_PROGRESS, COMPLETED, CANCELLED)
    TERMINAL = (COMPLETED, CANCELLED)


MAINTENANCE_TYPES = ("plumbing", "electrical", "carpentry", "painting", "hvac", "general")
MAINTENANCE_PRIORITIES = ("low", "medium", "high", "emergency")
SCHEDULE_SLOTS = ("morning", "afternoon", "evening")


class PhotoKind:
    REQUEST = "request"
    COMPLETION = "completion"


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"

    ALL = (PENDING, PAID, OVERDUE)


class ReminderType:
    INITIAL = "initial"
    REMINDER = "reminder"
    OVERDUE = "overdue"

    ALL = (INITIAL, REMINDER, OVERDUE)
    # At most one of each per payment (partial unique index).
    ONCE_PER_PAYMENT = (INITIAL, OVERDUE)


ALLOWED_PHOTO_CONTENT_PREFIX = "image/"
