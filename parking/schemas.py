# schemas.py
import re
from pydantic import BaseModel, Field, ConfigDict, AfterValidator, model_validator, computed_field
from typing import Optional, List, Dict, Annotated
from datetime import datetime
from decimal import Decimal
from core.enums import VehicleType, SpotType, FineType, FineStrategyName, PaymentMethod, ReservationStatus
from .clock import utcnow, as_utc, billable_hours

PLATE_PATTERN = re.compile(r"^[A-Z0-9-]{2,15}$")

DEFAULT_HOURLY_RATES = {
    SpotType.COMPACT: Decimal("2.00"),
    SpotType.REGULAR: Decimal("5.00"),
    SpotType.HANDICAPPED: Decimal("2.00"),
    SpotType.RESERVED: Decimal("10.00"),
}

# 非残障车辆允许停放的车位类型
ALLOWED_SPOT_TYPES = {
    VehicleType.MOTORCYCLE: {SpotType.COMPACT},
    VehicleType.CAR: {SpotType.COMPACT, SpotType.REGULAR},
    VehicleType.SUV_TRUCK: {SpotType.REGULAR},
    VehicleType.HANDICAPPED: set(SpotType),
}

def normalize_plate(value: str) -> str:
    if value is None:
        raise ValueError("license plate is required")
    plate = str(value).strip().upper()
    if not PLATE_PATTERN.match(plate):
        raise ValueError(f"invalid license plate {value!r}: expected 2-15 letters, digits or hyphens")
    return plate

LicensePlate = Annotated[str, AfterValidator(normalize_plate)]
UTCDatetime = Annotated[datetime, AfterValidator(as_utc)]

# --- 领域对象 ---
class Vehicle(BaseModel):
    license_plate: LicensePlate
    vehicle_type: VehicleType = VehicleType.CAR
    handicapped: bool = False
    entry_time: Optional[UTCDatetime] = None
    exit_time: Optional[UTCDatetime] = None
    elapsed_hours: Optional[int] = Field(default=None, ge=0)
    model_config = ConfigDict(validate_assignment=True)

    def parking_hours(self, now: datetime | None = None) -> Optional[int]:
        if self.entry_time is None:
            return None
        end = self.exit_time or now or utcnow()
        return billable_hours(self.entry_time, end)

    def can_park_in(self, spot_type: SpotType) -> bool:
        if self.handicapped:
            return True
        return spot_type in ALLOWED_SPOT_TYPES.get(self.vehicle_type, set())

class ParkingSpot(BaseModel):
    spot_id: str = Field(..., min_length=1, max_length=50)
    spot_type: SpotType
    hourly_rate: Decimal = Field(..., ge=0)
    model_config = ConfigDict(frozen=True, from_attributes=True)

    @model_validator(mode="before")
    @classmethod
    def _default_rate(cls, data):
        if isinstance(data, dict) and data.get("hourly_rate") is None and data.get("spot_type") is not None:
            data = dict(data)
            data["hourly_rate"] = DEFAULT_HOURLY_RATES[SpotType(data["spot_type"])]
        return data

class Fine(BaseModel):
    id: Optional[int] = None
    license_plate: LicensePlate = Field(frozen=True)
    fine_type: FineType = Field(frozen=True)
    amount: Decimal = Field(ge=0, frozen=True)
    issued_date: UTCDatetime = Field(default_factory=utcnow, frozen=True)
    entry_time: Optional[UTCDatetime] = Field(default=None, frozen=True)
    paid: bool = False
    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

class Payment(BaseModel):
    license_plate: LicensePlate
    parking_fee: Decimal = Field(ge=0)
    fine_amount: Decimal = Field(ge=0)
    amount_paid: Decimal = Field(ge=0)
    method: PaymentMethod
    payment_date: UTCDatetime = Field(default_factory=utcnow)
    model_config = ConfigDict(frozen=True, from_attributes=True)

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return self.parking_fee + self.fine_amount

class Reservation(BaseModel):
    id: Optional[int] = None
    license_plate: LicensePlate = Field(frozen=True)
    spot_id: str = Field(frozen=True)
    start_time: UTCDatetime = Field(frozen=True)
    end_time: UTCDatetime = Field(frozen=True)
    prepaid_amount: Decimal = Field(ge=0, frozen=True)
    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: UTCDatetime = Field(default_factory=utcnow)
    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    @model_validator(mode="after")
    def _window(self):
        if self.end_time <= self.start_time:
            raise ValueError("reservation end time must be after its start time")
        return self

    def state_at(self, now: datetime | None = None) -> ReservationStatus:
        if self.status == ReservationStatus.ACTIVE and as_utc(now or utcnow()) > self.end_time:
            return ReservationStatus.EXPIRED
        return self.status

    def is_valid_at(self, when: datetime) -> bool:
        when = as_utc(when)
        if self.status != ReservationStatus.ACTIVE:
            return False
        return self.start_time <= when <= self.end_time

class CashTendered(BaseModel):
    amount: Decimal = Field(ge=0)
    model_config = ConfigDict(frozen=True)

class RefundIssued(BaseModel):
    amount: Decimal = Field(ge=0)
    model_config = ConfigDict(frozen=True)

# --- API 请求/响应 ---
class SpotCreate(BaseModel):
    spot_id: str = Field(..., min_length=1, max_length=50)
    spot_type: SpotType
    hourly_rate: Optional[Decimal] = Field(default=None, ge=0)

class FeeQuoteRequest(BaseModel):
    license_plate: LicensePlate
    vehicle_type: VehicleType = VehicleType.CAR
    handicapped: bool = False
    spot_id: str
    duration_hours: int = Field(..., ge=0)

class FeeQuoteRead(BaseModel):
    spot_id: str
    hourly_rate: Decimal
    duration_hours: int
    parking_fee: Decimal

class UnpaidFinesRead(BaseModel):
    license_plate: str
    fines: List[Fine]
    total: Decimal

class PayFinesRequest(BaseModel):
    fine_ids: List[int] = Field(..., min_length=1)

class PayFinesRead(BaseModel):
    marked: List[int]
    failed: Dict[int, str] = {}

class FineStrategyRead(BaseModel):
    strategy: FineStrategyName
    changed_at: datetime

class FineStrategyUpdate(BaseModel):
    strategy: FineStrategyName

class ReservationCreate(BaseModel):
    license_plate: LicensePlate
    spot_id: str
    start_time: datetime
    end_time: datetime

class ReservationRead(BaseModel):
    id: int
    license_plate: str
    spot_id: str
    start_time: datetime
    end_time: datetime
    prepaid_amount: Decimal
    status: ReservationStatus
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class ReservationCancelRequest(BaseModel):
    acknowledge_no_refund: bool = False

class ExitSettleRequest(BaseModel):
    license_plate: LicensePlate
    vehicle_type: VehicleType = VehicleType.CAR
    handicapped: bool = False
    spot_id: str
    entry_time: datetime
    exit_time: Optional[datetime] = None
    elapsed_hours: Optional[int] = Field(default=None, ge=0)
    amount_paid: Decimal = Field(default=Decimal("0.00"), ge=0)
    payment_method: PaymentMethod
    # 宽限期或预付离场时投入的现金面额，离场后全额退回
    cash_inserted: Optional[Decimal] = Field(default=None, ge=0)
