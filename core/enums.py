# /core/enums.py
import enum

class VehicleType(enum.Enum):
    MOTORCYCLE = "MOTORCYCLE"
    CAR = "CAR"
    SUV_TRUCK = "SUV_TRUCK"
    HANDICAPPED = "HANDICAPPED"

class SpotType(enum.Enum):
    COMPACT = "COMPACT"
    REGULAR = "REGULAR"
    HANDICAPPED = "HANDICAPPED"
    RESERVED = "RESERVED"

class FineType(enum.Enum):
    OVERSTAY = "OVERSTAY"
    UNAUTHORIZED_RESERVED = "UNAUTHORIZED_RESERVED"
    UNPAID_BALANCE = "UNPAID_BALANCE"

class FineStrategyName(enum.Enum):
    FIXED = "FIXED"
    PROGRESSIVE = "PROGRESSIVE"
    HOURLY = "HOURLY"

class PaymentMethod(enum.Enum):
    CASH = "CASH"
    CARD = "CARD"

class ReservationStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

class ExitExemption(enum.Enum):
    NONE = "NONE"
    GRACE_PERIOD = "GRACE_PERIOD"
    PREPAID_RESERVATION = "PREPAID_RESERVATION"
