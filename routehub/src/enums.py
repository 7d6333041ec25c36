from enum import Enum, IntEnum


class AppID(IntEnum):
    PLATFORM = 1
    ORGANIZATION = 2


class OrderIn(IntEnum):
    ASC = 1
    DESC = 2


class UserRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    DRIVER = "driver"
    PARENT = "parent"


class RoleType(str, Enum):
    DEFAULT = "default"
    CUSTOM = "custom"


class TripStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Tier(str, Enum):
    ALL = "all"
    OWN = "own"
    NONE = "none"
